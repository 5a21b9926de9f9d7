"""Asynchronous failure detection through the remote event stream.

Some mutations report a stable status while a background part of the
operation still fails. After such a step stabilizes, the event stream is
searched from the moment just before the step was issued; a matching failure
event turns the otherwise successful progress into FAILED.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from .client import RemoteClient
from .config import HandlerConfig
from .errors import ErrorCode, ErrorRuleSet, handle_exception
from .progress import ProgressEvent

logger = logging.getLogger(__name__)

CHECK_FAILED_EVENTS_STEP = "check-failed-events"
FAILURE_EVENT_CATEGORY = "failure"

RemoteEvent = Mapping[str, Any]


def is_failure_category(event: RemoteEvent) -> bool:
    """True for events the service itself files under the failure category."""
    return FAILURE_EVENT_CATEGORY in (event.get("EventCategories") or [])


def check_failed_events(
    progress: ProgressEvent,
    client: RemoteClient,
    source_identifier: str,
    source_type: str,
    since: datetime | None,
    is_failure_event: Callable[[RemoteEvent], bool],
    rule_set: ErrorRuleSet,
    config: HandlerConfig,
    step: str = CHECK_FAILED_EVENTS_STEP,
) -> ProgressEvent:
    """Fail progress if the event stream reports a failure since a checkpoint.

    Args:
        progress: Progress after the mutating step stabilized.
        client: RDS client.
        source_identifier: Resource identifier the events refer to.
        source_type: Event source type (e.g. "db-instance").
        since: Start of the search window; no search without one.
        is_failure_event: Predicate selecting failure events.
        rule_set: Rules classifying errors from the event query itself.
        config: Handler configuration.
        step: Step the events are checked for; it prefixes the FAILED message.

    Returns:
        progress unchanged, FAILED on a failure event, or the classified
        result of an event query error.
    """
    if not progress.is_success or since is None:
        return progress

    request = {
        "SourceIdentifier": source_identifier,
        "SourceType": source_type,
        "StartTime": since,
    }

    try:
        for page in client.paginate("DescribeEvents", request):
            for event in page.get("Events", []):
                if not is_failure_event(event):
                    continue
                message = event.get("Message") or "Operation failed asynchronously"
                logger.error(
                    "Failure event detected",
                    extra={
                        "source_identifier": source_identifier,
                        "source_type": source_type,
                        "step": step,
                        "event_message": message,
                        "event_date": str(event.get("Date", "")),
                    },
                )
                return ProgressEvent.failed(
                    progress.model,
                    progress.context,
                    ErrorCode.GENERAL_SERVICE_EXCEPTION,
                    f"{step}: {message}",
                )
    except Exception as e:
        return handle_exception(progress, e, rule_set, CHECK_FAILED_EVENTS_STEP, config)

    return progress
