"""Tag and association set reconciliation.

Secondary collections are diffed between previous and desired state with
plain set difference: add = desired - previous, remove = previous - desired.
Tags come from three namespaces (system, stack, resource) that are merged
before diffing, with later namespaces winning on key conflicts.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TypeVar

from .client import RemoteClient
from .config import HandlerConfig
from .errors import ACCESS_DENIED_ERROR_CODES, ErrorRuleSet, handle_exception, remote_error_code
from .progress import ProgressEvent

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)

UPDATE_TAGS_STEP = "update-tags"


@dataclass(frozen=True)
class TagSet:
    """Tags split by the namespace that owns them."""

    system_tags: Mapping[str, str] = field(default_factory=dict)
    stack_tags: Mapping[str, str] = field(default_factory=dict)
    resource_tags: Mapping[str, str] = field(default_factory=dict)

    def merged(self) -> dict[str, str]:
        """Flatten namespaces; resource tags override stack tags override system tags."""
        return {**self.system_tags, **self.stack_tags, **self.resource_tags}


@dataclass(frozen=True)
class TagDiff:
    to_add: dict[str, str]
    to_remove: frozenset[str]

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def diff_tags(previous: Mapping[str, str], desired: Mapping[str, str]) -> TagDiff:
    """Compute the tag changes that turn previous into desired.

    A key whose value changed is only re-added, never removed first.
    """
    to_add = {key: value for key, value in desired.items() if previous.get(key) != value}
    to_remove = frozenset(key for key in previous if key not in desired)
    return TagDiff(to_add=to_add, to_remove=to_remove)


def diff_sets(previous: Iterable[T], desired: Iterable[T]) -> tuple[frozenset[T], frozenset[T]]:
    """Return (to_add, to_remove) for two collections of unique items."""
    previous_set = frozenset(previous)
    desired_set = frozenset(desired)
    return desired_set - previous_set, previous_set - desired_set


def update_tags(
    progress: ProgressEvent,
    client: RemoteClient,
    resource_arn: Callable[[], str],
    previous: TagSet,
    desired: TagSet,
    rule_set: ErrorRuleSet,
    config: HandlerConfig,
) -> ProgressEvent:
    """Apply the merged tag diff to a resource.

    Access denied while only system or stack tags change is tolerated: those
    tags are propagated on a best-effort basis. It fails the step when the
    resource's own tags changed.
    """
    diff = diff_tags(previous.merged(), desired.merged())
    if diff.is_empty:
        return progress

    try:
        arn = resource_arn()
        if diff.to_remove:
            client.invoke(
                "RemoveTagsFromResource",
                {"ResourceName": arn, "TagKeys": sorted(diff.to_remove)},
            )
        if diff.to_add:
            client.invoke(
                "AddTagsToResource",
                {
                    "ResourceName": arn,
                    "Tags": [{"Key": k, "Value": v} for k, v in sorted(diff.to_add.items())],
                },
            )
    except Exception as e:
        resource_tags_changed = dict(previous.resource_tags) != dict(desired.resource_tags)
        if remote_error_code(e) in ACCESS_DENIED_ERROR_CODES and not resource_tags_changed:
            logger.warning(
                "Not authorized to propagate tags, skipping",
                extra={"step": UPDATE_TAGS_STEP, "error_code": remote_error_code(e)},
            )
            return progress
        return handle_exception(progress, e, rule_set, UPDATE_TAGS_STEP, config)

    logger.info(
        "Tags reconciled",
        extra={
            "added": sorted(diff.to_add),
            "removed": sorted(diff.to_remove),
        },
    )
    return progress
