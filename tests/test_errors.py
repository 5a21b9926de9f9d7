"""Tests for error classification and handling."""

from __future__ import annotations

import pytest
from botocore.exceptions import EndpointConnectionError
from rds_mock import make_client_error

from rds_operator.config import HandlerConfig
from rds_operator.context import ProgressContext
from rds_operator.dbinstance.rules import (
    DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
    DELETE_DB_INSTANCE_ERROR_RULE_SET,
    MODIFY_DB_INSTANCE_ERROR_RULE_SET,
    UPDATE_ASSOCIATED_ROLES_ERROR_RULE_SET,
)
from rds_operator.errors import (
    DEFAULT_ERROR_RULE_SET,
    ErrorAction,
    ErrorCode,
    ErrorRuleSet,
    ErrorStatus,
    InvalidRequestError,
    RequestValidationError,
    StabilizationTimeoutError,
    handle_exception,
    remote_error_code,
    remote_error_message,
)
from rds_operator.progress import ProgressEvent


class TestRemoteErrorIdentity:
    """Tests for error code and message extraction."""

    def test_client_error_code(self) -> None:
        error = make_client_error("DBInstanceNotFound", "not here")

        assert remote_error_code(error) == "DBInstanceNotFound"
        assert remote_error_message(error) == "not here"

    def test_other_error_uses_class_name(self) -> None:
        assert remote_error_code(InvalidRequestError("bad")) == "InvalidRequestError"


class TestErrorRuleSet:
    """Tests for rule matching and precedence."""

    def test_default_throttling_is_retried(self) -> None:
        status = DEFAULT_ERROR_RULE_SET.classify(make_client_error("ThrottlingException"))

        assert status == ErrorStatus.retry(ErrorCode.THROTTLING)

    def test_transport_errors_are_retried(self) -> None:
        error = EndpointConnectionError(endpoint_url="https://rds.us-east-1.amazonaws.com")

        status = DEFAULT_ERROR_RULE_SET.classify(error)

        assert status == ErrorStatus.retry(ErrorCode.SERVICE_INTERNAL)

    def test_access_denied_is_invalid_request(self) -> None:
        status = DEFAULT_ERROR_RULE_SET.classify(make_client_error("AccessDenied"))

        assert status == ErrorStatus.fail(ErrorCode.INVALID_REQUEST)

    def test_unknown_client_error_is_general_service_exception(self) -> None:
        status = DEFAULT_ERROR_RULE_SET.classify(make_client_error("SomethingNew"))

        assert status == ErrorStatus.fail(ErrorCode.GENERAL_SERVICE_EXCEPTION)

    def test_unknown_exception_is_internal_failure(self) -> None:
        status = DEFAULT_ERROR_RULE_SET.classify(RuntimeError("boom"))

        assert status == ErrorStatus.fail(ErrorCode.INTERNAL_FAILURE)

    def test_child_rule_wins_over_parent(self) -> None:
        """InvalidParameterCombination is a failure by default but ignorable on modify."""
        error = make_client_error(
            "InvalidParameterCombination", "No modifications were requested"
        )

        assert DEFAULT_DB_INSTANCE_ERROR_RULE_SET.classify(error).action == ErrorAction.FAIL
        assert MODIFY_DB_INSTANCE_ERROR_RULE_SET.classify(error) == ErrorStatus.ignore()

    def test_message_rule_requires_fragment(self) -> None:
        error = make_client_error("InvalidParameterCombination", "Iops out of range")

        status = MODIFY_DB_INSTANCE_ERROR_RULE_SET.classify(error)

        assert status == ErrorStatus.fail(ErrorCode.INVALID_REQUEST)

    def test_message_rule_is_case_insensitive(self) -> None:
        error = make_client_error("InvalidDBInstanceState", "Instance IS ALREADY BEING DELETED")

        assert DELETE_DB_INSTANCE_ERROR_RULE_SET.classify(error) == ErrorStatus.ignore()

    def test_db_instance_state_conflict_is_retried(self) -> None:
        status = DEFAULT_DB_INSTANCE_ERROR_RULE_SET.classify(
            make_client_error("InvalidDBInstanceState", "Instance is modifying")
        )

        assert status == ErrorStatus.retry(ErrorCode.CONFLICT)

    def test_role_already_exists_is_ignored(self) -> None:
        status = UPDATE_ASSOCIATED_ROLES_ERROR_RULE_SET.classify(
            make_client_error("DBInstanceRoleAlreadyExists")
        )

        assert status == ErrorStatus.ignore()

    def test_builder_does_not_mutate_receiver(self) -> None:
        base = ErrorRuleSet(name="base")
        extended = base.with_error_codes(ErrorStatus.ignore(), "Gone")

        assert base.classify(make_client_error("Gone")).action == ErrorAction.FAIL
        assert extended.classify(make_client_error("Gone")) == ErrorStatus.ignore()

    def test_default_applies_to_unmatched_remote_errors(self) -> None:
        rules = ErrorRuleSet(name="lenient").with_default(ErrorStatus.ignore())

        assert rules.classify(make_client_error("Whatever")) == ErrorStatus.ignore()

    @pytest.mark.parametrize("error", [RequestValidationError("bad"), TypeError("bug")])
    def test_contract_violations_propagate(self, error: Exception) -> None:
        with pytest.raises(type(error)):
            DEFAULT_ERROR_RULE_SET.classify(error)


class TestHandleException:
    """Tests for turning classified errors into progress events."""

    @pytest.fixture
    def config(self) -> HandlerConfig:
        return HandlerConfig(backoff_base_seconds=5, backoff_max_seconds=60, max_retry_attempts=2)

    def test_ignored_error_proceeds(self, config: HandlerConfig) -> None:
        progress = ProgressEvent.proceed("model", ProgressContext())

        result = handle_exception(
            progress,
            make_client_error("InvalidParameterCombination", "No modifications were requested"),
            MODIFY_DB_INSTANCE_ERROR_RULE_SET,
            "modify",
            config,
        )

        assert result.is_success
        assert result.context is progress.context

    def test_retry_until_cap_then_fail(self, config: HandlerConfig) -> None:
        context = ProgressContext()
        progress = ProgressEvent.proceed("model", context)
        error = make_client_error("Throttling", "Rate exceeded")

        first = handle_exception(progress, error, DEFAULT_ERROR_RULE_SET, "modify", config)
        second = handle_exception(progress, error, DEFAULT_ERROR_RULE_SET, "modify", config)
        third = handle_exception(progress, error, DEFAULT_ERROR_RULE_SET, "modify", config)

        assert first.is_in_progress and first.callback_delay_seconds == 5
        assert second.is_in_progress and second.callback_delay_seconds == 10
        assert third.is_failed
        assert third.error_code == ErrorCode.THROTTLING

    def test_failure_message_names_step_and_code(self, config: HandlerConfig) -> None:
        progress = ProgressEvent.proceed("model", ProgressContext())

        result = handle_exception(
            progress,
            make_client_error("DBInstanceNotFound", "DBInstance db1 not found."),
            DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
            "describe-db-instance",
            config,
        )

        assert result.error_code == ErrorCode.NOT_FOUND
        assert result.message == (
            "describe-db-instance: DBInstanceNotFound: DBInstance db1 not found."
        )

    def test_stabilization_timeout_is_general_service_exception(
        self, config: HandlerConfig
    ) -> None:
        progress = ProgressEvent.proceed("model", ProgressContext())

        result = handle_exception(
            progress,
            StabilizationTimeoutError("modify did not stabilize"),
            DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
            "modify",
            config,
        )

        assert result.error_code == ErrorCode.GENERAL_SERVICE_EXCEPTION

    def test_retry_without_context_fails(self, config: HandlerConfig) -> None:
        progress = ProgressEvent.success("model")

        result = handle_exception(
            progress, make_client_error("Throttling"), DEFAULT_ERROR_RULE_SET, "read", config
        )

        assert result.is_failed
        assert result.error_code == ErrorCode.THROTTLING
