"""Versioned dispatch of step implementations.

Some remote API surfaces evolve field-incompatibly between versions. The
capability level is negotiated once per resource, memoised in the progress
context, and steps branch on it through an enum-keyed table.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import Enum

from .context import ProgressContext
from .progress import ProgressEvent

logger = logging.getLogger(__name__)

API_VERSION_SCRATCH_KEY = "api-version"


class ApiVersion(str, Enum):
    """RDS API versions with distinct request shapes."""

    # Legacy surface that still accepts DB security groups
    V12 = "2012-09-17"
    DEFAULT = "2014-10-31"


Implementation = Callable[[ProgressEvent], ProgressEvent]


def negotiate_api_version(
    context: ProgressContext, detect: Callable[[], ApiVersion]
) -> ApiVersion:
    """Return the memoised capability level, detecting it only on first use."""
    stored = context.get(API_VERSION_SCRATCH_KEY)
    if isinstance(stored, str):
        try:
            return ApiVersion(stored)
        except ValueError:
            logger.warning(
                "Ignoring unknown stored API version",
                extra={"api_version": stored},
            )

    version = detect()
    context.put(API_VERSION_SCRATCH_KEY, version.value)
    logger.info("Negotiated API version", extra={"api_version": version.value})
    return version


class VersionedDispatcher:
    """Total mapping from capability level to step implementation.

    Raises:
        ValueError: At construction if no DEFAULT implementation is given.
    """

    def __init__(self, implementations: Mapping[ApiVersion, Implementation]) -> None:
        if ApiVersion.DEFAULT not in implementations:
            raise ValueError("Versioned dispatch requires an ApiVersion.DEFAULT implementation")
        self._implementations = dict(implementations)

    def select(self, capability: ApiVersion) -> Implementation:
        return self._implementations.get(capability, self._implementations[ApiVersion.DEFAULT])

    def dispatch(self, capability: ApiVersion, progress: ProgressEvent) -> ProgressEvent:
        return self.select(capability)(progress)


def dispatch(
    capability: ApiVersion,
    implementations: Mapping[ApiVersion, Implementation],
    progress: ProgressEvent,
) -> ProgressEvent:
    """One-shot form of VersionedDispatcher.dispatch."""
    return VersionedDispatcher(implementations).dispatch(capability, progress)
