"""Idempotent step guard.

The host scheduler may re-invoke a handler any number of times with the same
progress context. Guarded steps record a completion marker in the context so
their mutating body runs at most once per logical operation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from .config import HandlerConfig
from .context import ProgressContext
from .errors import ErrorRuleSet, handle_exception
from .progress import ProgressEvent
from .stabilize import await_stable

logger = logging.getLogger(__name__)


def exec_once(
    progress: ProgressEvent,
    key: str,
    body: Callable[[], ProgressEvent],
    *,
    is_done: Callable[[ProgressContext], bool] | None = None,
    mark_done: Callable[[ProgressContext], None] | None = None,
) -> ProgressEvent:
    """Run body unless the step identified by key already completed.

    The marker is set only when body returns SUCCESS. An IN_PROGRESS result
    leaves it unset so the body is re-entered on the next invocation, which
    means every body must tolerate re-entry.

    Args:
        progress: Current progress.
        key: Step key, also the default marker name.
        body: The step body.
        is_done: Overrides the completion check (default: marker lookup).
        mark_done: Overrides marker recording (default: set the marker).
    """
    context = progress.context
    # SAFETY: pipeline steps always run with a live context
    assert context is not None

    done = is_done(context) if is_done is not None else context.is_done(key)
    if done:
        logger.debug("Step already completed, skipping", extra={"step": key})
        return progress

    result = body()

    if result.is_success:
        if mark_done is not None:
            mark_done(context)
        else:
            context.mark_done(key)
        context.reset_attempts(f"retry:{key}")
        logger.info("Step completed", extra={"step": key})

    return result


def invoke_once(
    progress: ProgressEvent,
    call_key: str,
    call: Callable[[], Any],
    rule_set: ErrorRuleSet,
    config: HandlerConfig,
    *,
    poll: Callable[[], Any] | None = None,
    predicate: Callable[[Any], bool] | None = None,
    not_found_codes: Iterable[str] = (),
) -> ProgressEvent:
    """Issue a mutating remote call once, then stabilize on later invocations.

    The call is tracked by its own ``<call_key>:invoked`` marker, so a step
    that re-enters while still stabilizing does not repeat the call. A call
    error classified as IGNORE counts as issued.
    """
    context = progress.context
    # SAFETY: pipeline steps always run with a live context
    assert context is not None

    marker = f"{call_key}:invoked"
    if not context.is_done(marker):
        try:
            call()
        except Exception as e:
            result = handle_exception(progress, e, rule_set, call_key, config)
            if not result.is_success:
                return result
        context.mark_done(marker)
        context.reset_attempts(f"retry:{call_key}")

    if poll is None or predicate is None:
        return ProgressEvent.proceed(progress.model, context)

    return await_stable(
        progress, poll, predicate, call_key, rule_set, config, not_found_codes=not_found_codes
    )


def was_invoked(context: ProgressContext, call_key: str) -> bool:
    """True once invoke_once issued the call for call_key."""
    return context.is_done(f"{call_key}:invoked")
