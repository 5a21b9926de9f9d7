"""Tests for the progress context carried between invocations."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from rds_operator.context import ContextSerializationError, ProgressContext


class TestMarkers:
    """Tests for completion markers."""

    def test_unknown_step_is_not_done(self) -> None:
        assert ProgressContext().is_done("modify") is False

    def test_mark_done(self) -> None:
        context = ProgressContext()
        context.mark_done("modify")

        assert context.is_done("modify") is True
        assert context.is_done("reboot") is False


class TestTimestamps:
    """Tests for checkpoint timestamps."""

    def test_timestamp_once_keeps_first_value(self) -> None:
        """Re-entry must not move the checkpoint forward."""
        context = ProgressContext()
        first = context.timestamp_once("updated", datetime(2024, 1, 1, tzinfo=UTC))
        second = context.timestamp_once("updated", datetime(2024, 6, 1, tzinfo=UTC))

        assert first == second
        assert context.get_timestamp("updated") == datetime(2024, 1, 1, tzinfo=UTC)

    def test_missing_timestamp_is_none(self) -> None:
        assert ProgressContext().get_timestamp("updated") is None


class TestScratch:
    """Tests for the scratch memo."""

    def test_put_ignores_none(self) -> None:
        context = ProgressContext()
        context.put("kms", None)

        assert "kms" not in context.scratch

    def test_put_once_returns_stored_value(self) -> None:
        context = ProgressContext()

        assert context.put_once("arn", "arn:one") == "arn:one"
        assert context.put_once("arn", "arn:two") == "arn:one"

    def test_put_once_keeps_falsy_values(self) -> None:
        context = ProgressContext()
        context.put("promoted", False)
        context.put("retries", 0)

        assert context.put_once("promoted", True) is False
        assert context.put_once("retries", 3) == 0

    def test_get_default(self) -> None:
        assert ProgressContext().get("missing", "fallback") == "fallback"


class TestAttempts:
    """Tests for attempt counters."""

    def test_next_attempt_increments(self) -> None:
        context = ProgressContext()

        assert context.next_attempt("poll") == 1
        assert context.next_attempt("poll") == 2
        assert context.attempt("poll") == 2

    def test_reset_attempts(self) -> None:
        context = ProgressContext()
        context.next_attempt("poll")
        context.reset_attempts("poll")

        assert context.attempt("poll") == 0


class TestSerialization:
    """Tests for the flat serialized form."""

    def test_round_trip(self) -> None:
        context = ProgressContext()
        context.mark_done("modify")
        context.timestamp_once("updated")
        context.put("arn", "arn:aws:rds:us-east-1:123:db:db1")
        context.put("allocating", True)
        context.next_attempt("stabilize:modify")

        restored = ProgressContext.from_json(context.to_json())

        assert restored == context

    def test_serialized_form_is_flat_primitives(self) -> None:
        context = ProgressContext()
        context.mark_done("modify")
        context.put("arn", "arn:x")

        data = json.loads(context.to_json())

        assert data == {"marker:modify": True, "scratch:arn": "arn:x"}

    def test_empty_payload_is_fresh_context(self) -> None:
        assert ProgressContext.from_json("") == ProgressContext()
        assert ProgressContext.from_dict(None) == ProgressContext()

    @pytest.mark.parametrize(
        "data",
        [
            {"modify": True},
            {"unknown:key": 1},
            {"marker:modify": "yes"},
            {"timestamp:updated": "2024-01-01"},
            {"attempt:poll": True},
            {"scratch:value": [1, 2]},
        ],
    )
    def test_rejects_malformed_data(self, data: dict[str, object]) -> None:
        with pytest.raises(ContextSerializationError):
            ProgressContext.from_dict(data)

    def test_rejects_invalid_json(self) -> None:
        with pytest.raises(ContextSerializationError, match="not valid JSON"):
            ProgressContext.from_json("{not json")

    def test_rejects_non_object_json(self) -> None:
        with pytest.raises(ContextSerializationError, match="must be an object"):
            ProgressContext.from_json("[1, 2]")
