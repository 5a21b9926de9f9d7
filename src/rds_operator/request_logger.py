"""Structured request/response logging for remote calls.

Every remote request and response passes through here before it reaches
the log stream, so sensitive request parameters are redacted in one place.
Errors are logged and re-raised unchanged; nothing is swallowed.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, NoReturn

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

REDACTED = "*** redacted ***"

# Request parameters that must never reach the logs
SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "MasterUserPassword",
        "NewMasterUserPassword",
        "TdeCredentialPassword",
        "PreSignedUrl",
        "SecretString",
        "Password",
    }
)

# Response keys dropped from logs to keep entries bounded
NOISY_KEYS: frozenset[str] = frozenset({"ResponseMetadata"})


def redact(payload: Any) -> Any:
    """Return a copy of payload with sensitive keys masked, recursively."""
    if isinstance(payload, Mapping):
        return {
            key: REDACTED if key in SENSITIVE_KEYS else redact(value)
            for key, value in payload.items()
            if key not in NOISY_KEYS
        }
    if isinstance(payload, (list, tuple)):
        return [redact(item) for item in payload]
    return payload


class RequestLogger:
    """Logs remote call traffic for one handler invocation.

    Args:
        resource_type: Logical resource type, included on every entry.
        invocation_id: Host-supplied correlation id, if any.
    """

    def __init__(self, resource_type: str = "", invocation_id: str = "") -> None:
        self._resource_type = resource_type
        self._invocation_id = invocation_id

    def _extra(self, **fields: Any) -> dict[str, Any]:
        extra = {"resource_type": self._resource_type, "invocation_id": self._invocation_id}
        extra.update(fields)
        return extra

    def log_request(self, operation: str, request: Mapping[str, Any]) -> None:
        logger.debug(
            "Remote request",
            extra=self._extra(operation=operation, request=redact(request)),
        )

    def log_response(self, operation: str, response: Any) -> None:
        logger.debug(
            "Remote response",
            extra=self._extra(operation=operation, response=redact(response)),
        )

    def log_omitted(self, operation: str) -> None:
        logger.debug(
            "Remote response",
            extra=self._extra(operation=operation, response="[Result log omitted]"),
        )

    def log_and_raise(self, operation: str, error: Exception) -> NoReturn:
        """Log a remote error and re-raise it unchanged."""
        extra = self._extra(operation=operation, error_type=type(error).__name__, error=str(error))
        if isinstance(error, ClientError):
            extra["error_code"] = error.response.get("Error", {}).get("Code")
            extra["status_code"] = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        logger.warning("Remote call failed", extra=extra)
        raise error
