"""Tests for progress events and the step chain."""

from __future__ import annotations

import pytest

from rds_operator.context import ProgressContext
from rds_operator.errors import ErrorCode
from rds_operator.progress import OperationStatus, ProgressEvent, chain


def _record(name: str, calls: list[str]):
    def step(progress: ProgressEvent) -> ProgressEvent:
        calls.append(name)
        return progress

    return step


class TestProgressEvent:
    """Tests for event construction and conversion."""

    def test_in_progress_requires_context(self) -> None:
        with pytest.raises(ValueError, match="context"):
            ProgressEvent.in_progress("model", None, 5)  # type: ignore[arg-type]

    def test_in_progress_rejects_negative_delay(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            ProgressEvent.in_progress("model", ProgressContext(), -1)

    def test_success_has_no_context(self) -> None:
        event = ProgressEvent.success("model")

        assert event.is_success
        assert event.context is None

    def test_terminal_drops_context_on_failure(self) -> None:
        event = ProgressEvent.failed("model", ProgressContext(), ErrorCode.NOT_FOUND, "gone")

        result = event.terminal()

        assert result.is_failed
        assert result.context is None
        assert result.callback_delay_seconds == 0

    def test_terminal_keeps_context_in_progress(self) -> None:
        context = ProgressContext()
        event = ProgressEvent.in_progress("model", context, 30, attempt=2)

        assert event.terminal() is event

    def test_then_skips_after_in_progress(self) -> None:
        calls: list[str] = []
        event = ProgressEvent.in_progress("model", ProgressContext(), 5)

        result = event.then(_record("next", calls))

        assert result is event
        assert calls == []

    def test_to_dict(self) -> None:
        event = ProgressEvent.failed(None, None, ErrorCode.NOT_UPDATABLE, "immutable")

        data = event.to_dict()

        assert data["status"] == "FAILED"
        assert data["errorCode"] == "NotUpdatable"
        assert data["message"] == "immutable"
        assert data["callbackContext"] is None

    def test_to_dict_list_result(self) -> None:
        event = ProgressEvent(
            status=OperationStatus.SUCCESS, resource_models=["a", "b"], next_token="2"
        )

        data = event.to_dict()

        assert data["resourceModels"] == ["a", "b"]
        assert data["nextToken"] == "2"


class TestChain:
    """Tests for short-circuiting composition."""

    def test_runs_all_steps_on_success(self) -> None:
        calls: list[str] = []
        progress = ProgressEvent.proceed("model", ProgressContext())

        result = chain(progress, [_record("a", calls), _record("b", calls)])

        assert result.is_success
        assert calls == ["a", "b"]

    def test_stops_at_in_progress(self) -> None:
        calls: list[str] = []
        context = ProgressContext()

        result = chain(
            ProgressEvent.proceed("model", context),
            [
                _record("a", calls),
                lambda p: ProgressEvent.in_progress(p.model, context, 10),
                _record("c", calls),
            ],
        )

        assert result.is_in_progress
        assert result.callback_delay_seconds == 10
        assert calls == ["a"]

    def test_stops_at_failure(self) -> None:
        calls: list[str] = []
        context = ProgressContext()

        result = chain(
            ProgressEvent.proceed("model", context),
            [
                lambda p: ProgressEvent.failed(p.model, context, ErrorCode.INVALID_REQUEST),
                _record("b", calls),
            ],
        )

        assert result.is_failed
        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert calls == []

    def test_empty_chain_returns_input(self) -> None:
        progress = ProgressEvent.proceed("model", ProgressContext())

        assert chain(progress, []) is progress
