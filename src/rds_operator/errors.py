"""Outcome and error taxonomy.

Remote calls fail with a large space of error identities (botocore
``ClientError`` codes, transport errors). Each pipeline step owns an
``ErrorRuleSet``: an ordered, immutable table mapping error identities to
one of three actions:

- FAIL: terminal, surfaced with an ``ErrorCode``
- RETRY: transient (Throttling, ServiceInternal, Conflict); the handler
  returns IN_PROGRESS with a backoff delay until the retry cap is reached
- IGNORE: the remote side is already in the requested state; the step
  counts as successful

Rules are evaluated first-match-wins, child rules before inherited ones.
Unmatched remote errors fall back to the rule set default; programming
contract violations are re-raised rather than classified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .backoff import BackoffPolicy
from .config import HandlerConfig
from .progress import ProgressEvent

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Stable error codes surfaced on FAILED events."""

    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    INVALID_REQUEST = "InvalidRequest"
    NOT_UPDATABLE = "NotUpdatable"
    THROTTLING = "Throttling"
    SERVICE_INTERNAL = "ServiceInternal"
    CONFLICT = "Conflict"
    GENERAL_SERVICE_EXCEPTION = "GeneralServiceException"
    INTERNAL_FAILURE = "InternalFailure"


class OperatorError(Exception):
    """Base class for errors raised by the handlers themselves."""

    pass


class InvalidRequestError(OperatorError):
    """Raised when a request violates a rule detected during reconciliation."""

    pass


class RequestValidationError(OperatorError):
    """Raised when the input model is malformed.

    This is a contract violation: it is never classified by a rule set and
    terminates the operation before any remote call is attempted.
    """

    pass


class StabilizationTimeoutError(OperatorError):
    """Raised when a step keeps reporting PENDING past its stabilization bound."""

    pass


# Exceptions that indicate a bug or a malformed input rather than a remote
# condition. Rule sets never absorb these.
CONTRACT_VIOLATIONS: tuple[type[BaseException], ...] = (
    RequestValidationError,
    TypeError,
    AttributeError,
)


def remote_error_code(error: BaseException) -> str:
    """Return the identity of a remote error.

    ``ClientError`` identities are the service error code; anything else is
    identified by its class name.
    """
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", "Unknown"))
    return type(error).__name__


def remote_error_message(error: BaseException) -> str:
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Message", "")) or str(error)
    return str(error)


class ErrorAction(str, Enum):
    FAIL = "fail"
    RETRY = "retry"
    IGNORE = "ignore"


@dataclass(frozen=True)
class ErrorStatus:
    """Classification result for one error."""

    action: ErrorAction
    code: ErrorCode | None = None

    @classmethod
    def fail(cls, code: ErrorCode) -> ErrorStatus:
        return cls(ErrorAction.FAIL, code)

    @classmethod
    def retry(cls, code: ErrorCode) -> ErrorStatus:
        return cls(ErrorAction.RETRY, code)

    @classmethod
    def ignore(cls) -> ErrorStatus:
        return cls(ErrorAction.IGNORE)


ErrorMatcher = Callable[[BaseException], bool]


@dataclass(frozen=True)
class ErrorRule:
    """A single (matcher, status) row in a rule set."""

    matcher: ErrorMatcher
    status: ErrorStatus
    description: str


class ErrorRuleSet:
    """Ordered, immutable error classification table.

    Builder methods return a new rule set; the receiver is never mutated.

    Usage:
        rules = (
            ErrorRuleSet.extending(DEFAULT_ERROR_RULE_SET, name="modify")
            .with_error_codes(ErrorStatus.retry(ErrorCode.CONFLICT), "InvalidDBInstanceState")
            .with_message_containing(
                ErrorStatus.ignore(), "InvalidParameterCombination", "No modifications"
            )
        )
    """

    def __init__(
        self,
        name: str = "default",
        rules: tuple[ErrorRule, ...] = (),
        parent: ErrorRuleSet | None = None,
        default: ErrorStatus | None = None,
    ) -> None:
        self._name = name
        self._rules = rules
        self._parent = parent
        self._default = default

    @property
    def name(self) -> str:
        return self._name

    @classmethod
    def extending(cls, parent: ErrorRuleSet, name: str) -> ErrorRuleSet:
        """Start a rule set whose own rules take precedence over parent's."""
        return cls(name=name, parent=parent)

    def _with_rule(self, rule: ErrorRule) -> ErrorRuleSet:
        return ErrorRuleSet(
            name=self._name,
            rules=(*self._rules, rule),
            parent=self._parent,
            default=self._default,
        )

    def with_error_codes(self, status: ErrorStatus, *codes: str) -> ErrorRuleSet:
        code_set = frozenset(codes)
        return self._with_rule(
            ErrorRule(
                matcher=lambda e: isinstance(e, ClientError) and remote_error_code(e) in code_set,
                status=status,
                description=f"codes={sorted(code_set)}",
            )
        )

    def with_error_classes(
        self, status: ErrorStatus, *classes: type[BaseException]
    ) -> ErrorRuleSet:
        return self._with_rule(
            ErrorRule(
                matcher=lambda e: isinstance(e, classes),
                status=status,
                description=f"classes={[c.__name__ for c in classes]}",
            )
        )

    def with_message_containing(
        self, status: ErrorStatus, code: str, fragment: str
    ) -> ErrorRuleSet:
        lowered = fragment.lower()
        return self._with_rule(
            ErrorRule(
                matcher=lambda e: (
                    isinstance(e, ClientError)
                    and remote_error_code(e) == code
                    and lowered in remote_error_message(e).lower()
                ),
                status=status,
                description=f"code={code} message~{fragment!r}",
            )
        )

    def with_default(self, status: ErrorStatus) -> ErrorRuleSet:
        return ErrorRuleSet(
            name=self._name, rules=self._rules, parent=self._parent, default=status
        )

    def _match(self, error: BaseException) -> ErrorStatus | None:
        for rule in self._rules:
            if rule.matcher(error):
                return rule.status
        if self._parent is not None:
            return self._parent._match(error)
        return None

    def _fallback(self) -> ErrorStatus | None:
        if self._default is not None:
            return self._default
        if self._parent is not None:
            return self._parent._fallback()
        return None

    def classify(self, error: BaseException) -> ErrorStatus:
        """Classify an error.

        Raises:
            The error itself, unchanged, if it is a contract violation.
        """
        if isinstance(error, CONTRACT_VIOLATIONS):
            raise error

        status = self._match(error)
        if status is not None:
            return status

        if isinstance(error, (ClientError, BotoCoreError)):
            return self._fallback() or ErrorStatus.fail(ErrorCode.GENERAL_SERVICE_EXCEPTION)
        return ErrorStatus.fail(ErrorCode.INTERNAL_FAILURE)


THROTTLING_ERROR_CODES = (
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "RequestThrottledException",
    "TooManyRequestsException",
)

SERVICE_INTERNAL_ERROR_CODES = (
    "InternalFailure",
    "InternalError",
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
)

ACCESS_DENIED_ERROR_CODES = (
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "NotAuthorized",
)

INVALID_PARAMETER_ERROR_CODES = (
    "InvalidParameterValue",
    "InvalidParameterCombination",
    "MissingParameter",
    "ValidationError",
)

DEFAULT_ERROR_RULE_SET = (
    ErrorRuleSet(name="default")
    .with_error_codes(ErrorStatus.retry(ErrorCode.THROTTLING), *THROTTLING_ERROR_CODES)
    .with_error_codes(ErrorStatus.retry(ErrorCode.SERVICE_INTERNAL), *SERVICE_INTERNAL_ERROR_CODES)
    .with_error_classes(
        ErrorStatus.retry(ErrorCode.SERVICE_INTERNAL),
        EndpointConnectionError,
        ConnectTimeoutError,
        ReadTimeoutError,
        ConnectionClosedError,
    )
    .with_error_codes(ErrorStatus.fail(ErrorCode.INVALID_REQUEST), *ACCESS_DENIED_ERROR_CODES)
    .with_error_codes(ErrorStatus.fail(ErrorCode.INVALID_REQUEST), *INVALID_PARAMETER_ERROR_CODES)
    .with_error_classes(ErrorStatus.fail(ErrorCode.INVALID_REQUEST), InvalidRequestError)
    .with_error_classes(
        ErrorStatus.fail(ErrorCode.GENERAL_SERVICE_EXCEPTION), StabilizationTimeoutError
    )
)


def handle_exception(
    progress: ProgressEvent,
    error: BaseException,
    rule_set: ErrorRuleSet,
    step: str,
    config: HandlerConfig,
) -> ProgressEvent:
    """Convert an exception caught at a step boundary into a progress event.

    Args:
        progress: The event the failing step started from.
        error: The caught exception.
        rule_set: The step's error rule set.
        step: Step name, used in messages and as the retry counter key.
        config: Handler configuration (retry cap and backoff).

    Returns:
        SUCCESS (ignored), IN_PROGRESS (retry scheduled) or FAILED.

    Raises:
        The original exception if it is a contract violation.
    """
    status = rule_set.classify(error)
    code = remote_error_code(error)
    message = remote_error_message(error)
    context = progress.context

    if status.action == ErrorAction.IGNORE:
        logger.info(
            "Remote error ignored",
            extra={"step": step, "rule_set": rule_set.name, "error_code": code},
        )
        return ProgressEvent.proceed(progress.model, context)

    # SAFETY: RETRY and FAIL statuses are always constructed with a code
    assert status.code is not None

    if status.action == ErrorAction.RETRY and context is not None:
        attempt = context.next_attempt(f"retry:{step}")
        if attempt <= config.max_retry_attempts:
            delay = BackoffPolicy.from_config(config).delay_for(attempt)
            logger.warning(
                "Retryable remote error, rescheduling",
                extra={
                    "step": step,
                    "rule_set": rule_set.name,
                    "error_code": code,
                    "classified_as": status.code.value,
                    "attempt": attempt,
                    "max_attempts": config.max_retry_attempts,
                    "delay_seconds": delay,
                },
            )
            return ProgressEvent.in_progress(progress.model, context, delay, attempt)

    logger.error(
        "Step failed",
        extra={
            "step": step,
            "rule_set": rule_set.name,
            "error_code": code,
            "classified_as": status.code.value,
            "error": message,
        },
    )
    return ProgressEvent.failed(progress.model, context, status.code, f"{step}: {code}: {message}")
