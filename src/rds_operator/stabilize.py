"""Stabilization poller.

A mutation against a slow-to-converge resource is followed by one remote
read per invocation. If the observed state does not yet satisfy the step's
predicate, the poller reports PENDING with a backoff delay and control goes
back to the host scheduler. Nothing in here sleeps.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .backoff import BackoffPolicy
from .config import HandlerConfig
from .context import ProgressContext
from .errors import (
    CONTRACT_VIOLATIONS,
    ErrorRuleSet,
    StabilizationTimeoutError,
    handle_exception,
    remote_error_code,
)
from .progress import ProgressEvent

logger = logging.getLogger(__name__)


class StabilizationState(str, Enum):
    STABLE = "stable"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class StabilizationResult:
    """Outcome of one poll."""

    state: StabilizationState
    delay_seconds: int = 0
    attempt: int = 0
    error: BaseException | None = None


def _attempt_key(key: str) -> str:
    return f"stabilize:{key}"


def stabilize(
    poll: Callable[[], Any],
    predicate: Callable[[Any], bool],
    context: ProgressContext,
    key: str,
    config: HandlerConfig,
    *,
    not_found_codes: Iterable[str] = (),
) -> StabilizationResult:
    """Poll once and evaluate the stabilization predicate.

    Args:
        poll: Performs one remote read and returns the observed state.
        predicate: Returns True when the observed state reflects completion.
        context: Progress context holding the per-key attempt counter.
        key: Stabilization key (one counter per key).
        config: Handler configuration (backoff and attempt bound).
        not_found_codes: Error codes that mean the resource is gone. When
            given, a not-found poll is a terminal STABLE signal; used for
            delete steps only.

    Returns:
        STABLE, PENDING with the next delay, or FAILED carrying the error.
    """
    not_found = frozenset(not_found_codes)
    try:
        stable = predicate(poll())
    except CONTRACT_VIOLATIONS:
        raise
    except Exception as e:
        if not_found and remote_error_code(e) in not_found:
            context.reset_attempts(_attempt_key(key))
            logger.info("Resource gone, treating as stabilized", extra={"step": key})
            return StabilizationResult(StabilizationState.STABLE)
        return StabilizationResult(StabilizationState.FAILED, error=e)

    # Retryable poll errors are counted between successful polls only
    context.reset_attempts(f"retry:{key}")

    if stable:
        context.reset_attempts(_attempt_key(key))
        return StabilizationResult(StabilizationState.STABLE)

    attempt = context.next_attempt(_attempt_key(key))
    if attempt > config.max_stabilization_attempts:
        return StabilizationResult(
            StabilizationState.FAILED,
            attempt=attempt,
            error=StabilizationTimeoutError(
                f"{key} did not stabilize after {attempt - 1} polls"
            ),
        )

    delay = BackoffPolicy.from_config(config).delay_for(attempt)
    return StabilizationResult(StabilizationState.PENDING, delay_seconds=delay, attempt=attempt)


def await_stable(
    progress: ProgressEvent,
    poll: Callable[[], Any],
    predicate: Callable[[Any], bool],
    key: str,
    rule_set: ErrorRuleSet,
    config: HandlerConfig,
    *,
    not_found_codes: Iterable[str] = (),
) -> ProgressEvent:
    """Run one stabilization poll and convert it into a progress event."""
    # SAFETY: pipeline steps always run with a live context
    assert progress.context is not None

    result = stabilize(
        poll, predicate, progress.context, key, config, not_found_codes=not_found_codes
    )

    match result.state:
        case StabilizationState.STABLE:
            return ProgressEvent.proceed(progress.model, progress.context)
        case StabilizationState.PENDING:
            logger.info(
                "Resource still converging",
                extra={
                    "step": key,
                    "attempt": result.attempt,
                    "delay_seconds": result.delay_seconds,
                },
            )
            return ProgressEvent.in_progress(
                progress.model, progress.context, result.delay_seconds, result.attempt
            )
        case _:
            # SAFETY: FAILED results always carry the error
            assert result.error is not None
            return handle_exception(progress, result.error, rule_set, key, config)
