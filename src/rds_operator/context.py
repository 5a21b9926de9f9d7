"""Progress context carried between handler invocations.

The host scheduler persists whatever a handler returns and hands it back
verbatim on the next invocation, so this record is the only state that
survives between ticks. It holds four plain mappings:

- markers: step key -> completed flag (set once, never cleared)
- timestamps: checkpoint name -> epoch seconds (bounds event searches)
- scratch: values captured by one step for a later one (ARN, KMS key id)
- attempts: per-step PENDING/retry counters feeding the backoff policy

The serialized form is a single flat dict of primitives keyed by
"<section>:<name>" so it can be stored without any custom encoder.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

MARKER_PREFIX = "marker:"
TIMESTAMP_PREFIX = "timestamp:"
SCRATCH_PREFIX = "scratch:"
ATTEMPT_PREFIX = "attempt:"

ScratchValue = str | int | bool


class ContextSerializationError(ValueError):
    """Raised when a persisted context cannot be restored."""

    pass


@dataclass
class ProgressContext:
    """Serializable carry-over state for one logical operation."""

    markers: dict[str, bool] = field(default_factory=dict)
    timestamps: dict[str, int] = field(default_factory=dict)
    scratch: dict[str, ScratchValue] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)

    # -- completion markers -------------------------------------------------

    def is_done(self, key: str) -> bool:
        """Return True if the step identified by key already completed."""
        return self.markers.get(key, False)

    def mark_done(self, key: str) -> None:
        """Mark a step as completed. Markers are never reset."""
        self.markers[key] = True

    # -- timestamps ---------------------------------------------------------

    def timestamp_once(self, key: str, when: datetime | None = None) -> int:
        """Record a checkpoint time unless one was already recorded.

        Returns:
            The stored epoch seconds (the original one on re-entry).
        """
        if key not in self.timestamps:
            moment = when or datetime.now(UTC)
            self.timestamps[key] = int(moment.timestamp())
        return self.timestamps[key]

    def get_timestamp(self, key: str) -> datetime | None:
        """Return a recorded checkpoint as an aware UTC datetime."""
        value = self.timestamps.get(key)
        if value is None:
            return None
        return datetime.fromtimestamp(value, UTC)

    # -- scratch memo -------------------------------------------------------

    def get(self, key: str, default: ScratchValue | None = None) -> ScratchValue | None:
        return self.scratch.get(key, default)

    def put(self, key: str, value: ScratchValue | None) -> None:
        """Store a scratch value. None values are not stored."""
        if value is None:
            return
        self.scratch[key] = value

    def put_once(self, key: str, value: ScratchValue | None) -> ScratchValue | None:
        """Store a scratch value unless one is already stored; return the stored value."""
        if key not in self.scratch:
            self.put(key, value)
        return self.scratch.get(key)

    # -- attempt counters ---------------------------------------------------

    def attempt(self, key: str) -> int:
        return self.attempts.get(key, 0)

    def next_attempt(self, key: str) -> int:
        """Increment and return the attempt counter for key."""
        self.attempts[key] = self.attempts.get(key, 0) + 1
        return self.attempts[key]

    def reset_attempts(self, key: str) -> None:
        self.attempts.pop(key, None)

    # -- serialization ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Flatten to a dict of primitive values."""
        result: dict[str, Any] = {}
        for key, done in self.markers.items():
            result[MARKER_PREFIX + key] = done
        for key, epoch in self.timestamps.items():
            result[TIMESTAMP_PREFIX + key] = epoch
        for key, value in self.scratch.items():
            result[SCRATCH_PREFIX + key] = value
        for key, count in self.attempts.items():
            result[ATTEMPT_PREFIX + key] = count
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProgressContext:
        """Restore a context from its flattened form.

        Raises:
            ContextSerializationError: If a key has no known section or a value
                has the wrong primitive type.
        """
        context = cls()
        for raw_key, value in (data or {}).items():
            section, sep, key = raw_key.partition(":")
            if not sep or not key:
                raise ContextSerializationError(f"Context key has no section: {raw_key!r}")

            match section + ":":
                case "marker:":
                    if not isinstance(value, bool):
                        raise ContextSerializationError(f"Marker {key!r} must be a boolean")
                    context.markers[key] = value
                case "timestamp:":
                    if isinstance(value, bool) or not isinstance(value, int):
                        raise ContextSerializationError(f"Timestamp {key!r} must be an integer")
                    context.timestamps[key] = value
                case "scratch:":
                    if not isinstance(value, (str, int, bool)):
                        raise ContextSerializationError(f"Scratch {key!r} must be a primitive")
                    context.scratch[key] = value
                case "attempt:":
                    if isinstance(value, bool) or not isinstance(value, int):
                        raise ContextSerializationError(f"Attempt {key!r} must be an integer")
                    context.attempts[key] = value
                case _:
                    raise ContextSerializationError(f"Unknown context section: {section!r}")
        return context

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, payload: str) -> ProgressContext:
        try:
            data = json.loads(payload) if payload.strip() else {}
        except json.JSONDecodeError as e:
            raise ContextSerializationError(f"Context is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ContextSerializationError("Context JSON must be an object")
        return cls.from_dict(data)
