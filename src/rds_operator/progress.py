"""Progress events and the short-circuiting step chain.

Every step in a reconciliation pipeline has the same shape,
``ProgressEvent -> ProgressEvent``. A pipeline is an ordered list of such
steps folded left to right:

- SUCCESS: the step finished, the next step runs
- IN_PROGRESS: the remote side is still converging; the chain stops and the
  host scheduler re-invokes the handler after ``callback_delay_seconds``
- FAILED: terminal; the chain stops and the event is the final result
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from .context import ProgressContext

if TYPE_CHECKING:
    from .errors import ErrorCode


class OperationStatus(str, Enum):
    """Outcome kinds surfaced to the host scheduler."""

    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class ProgressEvent:
    """Per-invocation (and per-step) result.

    Attributes:
        status: Outcome kind.
        model: The (possibly mutated) resource model.
        context: Progress context; None once the operation is terminal.
        callback_delay_seconds: Re-invocation delay hint for IN_PROGRESS.
        error_code: Classified error code for FAILED events.
        message: Human-readable failure reason.
        attempt: Backoff attempt that produced an IN_PROGRESS event.
        resource_models: Models returned by list operations.
        next_token: Pagination token returned by list operations.
    """

    status: OperationStatus
    model: Any = None
    context: ProgressContext | None = None
    callback_delay_seconds: int = 0
    error_code: ErrorCode | None = None
    message: str | None = None
    attempt: int = 0
    resource_models: list[Any] | None = None
    next_token: str | None = None

    @classmethod
    def proceed(cls, model: Any, context: ProgressContext) -> ProgressEvent:
        """A completed step; the chain continues with the next one."""
        return cls(status=OperationStatus.SUCCESS, model=model, context=context)

    @classmethod
    def in_progress(
        cls,
        model: Any,
        context: ProgressContext,
        delay_seconds: int,
        attempt: int = 0,
    ) -> ProgressEvent:
        if delay_seconds < 0:
            raise ValueError(f"callback delay must be non-negative: {delay_seconds}")
        if context is None:
            raise ValueError("IN_PROGRESS events must carry a progress context")
        return cls(
            status=OperationStatus.IN_PROGRESS,
            model=model,
            context=context,
            callback_delay_seconds=delay_seconds,
            attempt=attempt,
        )

    @classmethod
    def success(cls, model: Any) -> ProgressEvent:
        """Terminal success. The context is discarded."""
        return cls(status=OperationStatus.SUCCESS, model=model)

    @classmethod
    def failed(
        cls,
        model: Any,
        context: ProgressContext | None,
        error_code: ErrorCode,
        message: str | None = None,
    ) -> ProgressEvent:
        return cls(
            status=OperationStatus.FAILED,
            model=model,
            context=context,
            error_code=error_code,
            message=message,
        )

    @property
    def is_success(self) -> bool:
        return self.status == OperationStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == OperationStatus.FAILED

    @property
    def is_in_progress(self) -> bool:
        return self.status == OperationStatus.IN_PROGRESS

    def then(self, step: Callable[[ProgressEvent], ProgressEvent]) -> ProgressEvent:
        """Apply step only if this event lets the chain continue."""
        if not self.is_success:
            return self
        return step(self)

    def terminal(self) -> ProgressEvent:
        """Convert a finished pipeline result into what the host receives.

        IN_PROGRESS events keep their context; SUCCESS and FAILED drop it and
        never carry a pending delay.
        """
        if self.is_in_progress:
            return self
        return replace(self, context=None, callback_delay_seconds=0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict for logging and the local driver."""
        model = self.model
        if model is not None and hasattr(model, "model_dump"):
            model = model.model_dump(by_alias=True, exclude_none=True)
        result: dict[str, Any] = {
            "status": self.status.value,
            "resourceModel": model,
            "callbackContext": self.context.to_dict() if self.context is not None else None,
            "callbackDelaySeconds": self.callback_delay_seconds,
        }
        if self.error_code is not None:
            result["errorCode"] = self.error_code.value
        if self.message:
            result["message"] = self.message
        if self.is_in_progress:
            result["attempt"] = self.attempt
        if self.resource_models is not None:
            result["resourceModels"] = [
                m.model_dump(by_alias=True, exclude_none=True) if hasattr(m, "model_dump") else m
                for m in self.resource_models
            ]
            result["nextToken"] = self.next_token
        return result


Step = Callable[[ProgressEvent], ProgressEvent]


def chain(progress: ProgressEvent, steps: Iterable[Step]) -> ProgressEvent:
    """Fold progress through steps, stopping at the first non-SUCCESS event."""
    for step in steps:
        if not progress.is_success:
            break
        progress = step(progress)
    return progress
