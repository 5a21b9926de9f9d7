"""Tests for handler routing."""

from __future__ import annotations

import pytest
from rds_mock import NEVER, MockRdsContext

from rds_operator.config import DB_INSTANCE_HANDLER_CONFIG_36H, DEFAULT_HANDLER_CONFIG
from rds_operator.dbinstance.handlers import ReadHandler
from rds_operator.dbinstance.update import UpdateHandler
from rds_operator.dbsubnetgroup import handlers as subnet_group_handlers
from rds_operator.main import (
    DEFAULT_CONFIGS,
    build_clients,
    get_handler_class,
    handle_request,
)
from rds_operator.request_logger import RequestLogger
from rds_operator.spec_loader import parse_request


class TestRouting:
    """Tests for resource/action lookup."""

    def test_known_handlers(self) -> None:
        assert get_handler_class("db-instance", "read") is ReadHandler
        assert get_handler_class("db-instance", "update") is UpdateHandler
        assert (
            get_handler_class("db-subnet-group", "delete") is subnet_group_handlers.DeleteHandler
        )

    def test_unknown_combination(self) -> None:
        with pytest.raises(ValueError, match="Unsupported resource/action"):
            get_handler_class("db-cluster", "create")

    def test_db_instances_get_long_stabilization(self) -> None:
        assert DEFAULT_CONFIGS["db-instance"] is DB_INSTANCE_HANDLER_CONFIG_36H
        assert DEFAULT_CONFIGS["db-subnet-group"] is DEFAULT_HANDLER_CONFIG


class TestHandleRequest:
    """End-to-end invocations through boto3 client construction."""

    CREDENTIALS = {"accessKeyId": "AKID", "secretAccessKey": "secret", "sessionToken": "token"}

    def test_read_with_injected_credentials(self) -> None:
        with MockRdsContext() as ctx:
            ctx.state.add_instance("db1")
            clients = build_clients("us-east-1", self.CREDENTIALS, RequestLogger())
            request = parse_request(
                {"desiredResourceState": {"DBInstanceIdentifier": "db1"}}, "db-instance"
            )

            result = handle_request("db-instance", "read", request, None, clients)

        assert result.is_success
        assert result.model.db_instance_identifier == "db1"
        assert ctx.created_credentials == [self.CREDENTIALS, self.CREDENTIALS]

    def test_update_in_progress_returns_context(self) -> None:
        base = {"DBInstanceIdentifier": "db1", "Engine": "mysql", "VPCSecurityGroups": ["sg-1"]}
        with MockRdsContext(settle_polls=NEVER) as ctx:
            ctx.state.add_instance("db1")
            clients = build_clients("us-east-1", None, RequestLogger("AWS::RDS::DBInstance"))
            request = parse_request(
                {
                    "previousResourceState": base,
                    "desiredResourceState": {**base, "DBInstanceClass": "db.t3.large"},
                },
                "db-instance",
            )

            first = handle_request("db-instance", "update", request, None, clients)
            ctx.state.converge("db1")
            second = handle_request("db-instance", "update", request, first.context, clients)

        assert first.is_in_progress
        assert first.context is not None
        assert second.is_success
        assert second.model.db_instance_class == "db.t3.large"
        assert ctx.state.call_count("ModifyDBInstance") == 1
