"""Tests for DB instance create, read, delete and list handlers."""

from __future__ import annotations

from typing import Any

from rds_mock import NEVER, MockRdsState

from rds_operator.client import ProxyClients
from rds_operator.config import HandlerConfig
from rds_operator.context import ProgressContext
from rds_operator.dbinstance.base import DBInstanceRequest
from rds_operator.dbinstance.handlers import (
    CreateHandler,
    DeleteHandler,
    ListHandler,
    ReadHandler,
)
from rds_operator.errors import ErrorCode
from rds_operator.progress import OperationStatus


def _request(desired: dict[str, Any] | None = None, **kwargs: Any) -> DBInstanceRequest:
    payload: dict[str, Any] = {"region": "us-east-1", **kwargs}
    if desired is not None:
        payload["desiredResourceState"] = desired
    return DBInstanceRequest.model_validate(payload)


DESIRED = {
    "DBInstanceIdentifier": "db1",
    "Engine": "mysql",
    "EngineVersion": "8.0.35",
    "DBInstanceClass": "db.t3.micro",
    "AllocatedStorage": 20,
    "MasterUsername": "admin",
    "MasterUserPassword": "secret123",
}


# =============================================================================
# Create
# =============================================================================


class TestCreateHandler:
    """Tests for DB instance creation."""

    def test_creates_and_reads_back(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        result = CreateHandler(clients, config).handle(_request(DESIRED))

        assert result.status == OperationStatus.SUCCESS
        assert result.context is None
        assert result.model.db_instance_identifier == "db1"
        assert result.model.db_instance_arn == state.instances["db1"].arn
        assert state.call_count("CreateDBInstance") == 1
        assert state.calls_to("CreateDBInstance")[0].request["MasterUserPassword"] == "secret123"

    def test_resumes_without_repeating_create(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.settle_polls = NEVER
        handler = CreateHandler(clients, config)

        first = handler.handle(_request(DESIRED))

        assert first.is_in_progress
        assert first.callback_delay_seconds == 5
        assert first.context is not None

        state.converge("db1")
        restored = ProgressContext.from_json(first.context.to_json())
        second = handler.handle(_request(DESIRED), restored)

        assert second.is_success
        assert state.call_count("CreateDBInstance") == 1

    def test_backoff_grows_while_creating(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.settle_polls = NEVER
        handler = CreateHandler(clients, config)
        context = ProgressContext()

        delays = [
            handler.handle(_request(DESIRED), context).callback_delay_seconds for _ in range(4)
        ]

        assert delays == [5, 10, 20, 40]
        assert state.call_count("CreateDBInstance") == 1

    def test_existing_instance_fails(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.add_instance("db1")

        result = CreateHandler(clients, config).handle(_request(DESIRED))

        assert result.is_failed
        assert result.error_code == ErrorCode.ALREADY_EXISTS
        assert result.context is None

    def test_generates_identifier_when_missing(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        desired = {k: v for k, v in DESIRED.items() if k != "DBInstanceIdentifier"}

        result = CreateHandler(clients, config).handle(_request(desired))

        assert result.is_success
        identifier = result.model.db_instance_identifier
        assert identifier.startswith("db-")
        assert list(state.instances) == [identifier]

    def test_merges_tag_namespaces(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        request = _request(
            {**DESIRED, "Tags": [{"Key": "env", "Value": "prod"}]},
            systemTags={"aws:cloudformation:stack-name": "stack"},
            desiredResourceTags={"team": "data", "env": "dev"},
        )

        result = CreateHandler(clients, config).handle(request)

        assert state.instances["db1"].tags == {
            "aws:cloudformation:stack-name": "stack",
            "team": "data",
            "env": "prod",
        }
        assert {t.key for t in result.model.tags} == {
            "aws:cloudformation:stack-name",
            "team",
            "env",
        }

    def test_creates_read_replica(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.add_instance("source")

        result = CreateHandler(clients, config).handle(
            _request({"DBInstanceIdentifier": "replica", "SourceDBInstanceIdentifier": "source"})
        )

        assert result.is_success
        assert result.model.source_db_instance_identifier == "source"
        assert state.call_count("CreateDBInstanceReadReplica") == 1
        assert state.call_count("CreateDBInstance") == 0

    def test_associates_roles(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        desired = {
            **DESIRED,
            "AssociatedRoles": [{"RoleArn": "arn:aws:iam::1:role/s3", "FeatureName": "s3Import"}],
        }

        result = CreateHandler(clients, config).handle(_request(desired))

        assert result.is_success
        assert state.instances["db1"].roles["arn:aws:iam::1:role/s3"]["Status"] == "ACTIVE"

    def test_starts_backup_replication(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        desired = {**DESIRED, "AutomaticBackupReplicationRegion": "us-west-2"}

        result = CreateHandler(clients, config).handle(_request(desired))

        assert result.is_success
        assert result.model.automatic_backup_replication_region == "us-west-2"
        (call,) = state.calls_to("StartDBInstanceAutomatedBackupsReplication")
        assert call.region == "us-west-2"

    def test_same_region_replication_is_rejected(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        desired = {**DESIRED, "AutomaticBackupReplicationRegion": "us-east-1"}

        result = CreateHandler(clients, config).handle(_request(desired))

        assert result.is_failed
        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert result.message == (
            "validate-request: "
            "AutomaticBackupReplicationRegion must differ from the instance region"
        )
        assert state.calls == []

    def test_missing_model_is_rejected(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        result = CreateHandler(clients, config).handle(_request())

        assert result.is_failed
        assert result.error_code == ErrorCode.INVALID_REQUEST

    def test_throttled_create_is_retried(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.inject_error("CreateDBInstance", "Throttling")
        handler = CreateHandler(clients, config)
        context = ProgressContext()

        first = handler.handle(_request(DESIRED), context)
        second = handler.handle(_request(DESIRED), context)

        assert first.is_in_progress
        assert first.callback_delay_seconds == 5
        assert second.is_success
        assert state.call_count("CreateDBInstance") == 2


# =============================================================================
# Read
# =============================================================================


class TestReadHandler:
    """Tests for DB instance reads."""

    def test_reads_observed_state(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.add_instance("db1", instance_class="db.r6g.large", tags={"env": "prod"})

        result = ReadHandler(clients, config).handle(_request({"DBInstanceIdentifier": "db1"}))

        assert result.is_success
        assert result.model.db_instance_class == "db.r6g.large"
        assert state.mutating_calls() == []

    def test_missing_instance(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        result = ReadHandler(clients, config).handle(_request({"DBInstanceIdentifier": "db1"}))

        assert result.is_failed
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_identifier_required(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        result = ReadHandler(clients, config).handle(_request({"Engine": "mysql"}))

        assert result.is_failed
        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert state.calls == []


# =============================================================================
# Delete
# =============================================================================


class TestDeleteHandler:
    """Tests for DB instance deletion."""

    def test_deletes_instance(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.add_instance("db1")

        result = DeleteHandler(clients, config).handle(
            _request({"DBInstanceIdentifier": "db1", "FinalDBSnapshotIdentifier": "final"})
        )

        assert result.is_success
        assert result.model is None
        assert "db1" not in state.instances
        (call,) = state.calls_to("DeleteDBInstance")
        assert call.request["SkipFinalSnapshot"] is False

    def test_waits_until_gone(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.settle_polls = NEVER
        state.add_instance("db1")
        handler = DeleteHandler(clients, config)
        context = ProgressContext()

        first = handler.handle(_request({"DBInstanceIdentifier": "db1"}), context)
        state.converge("db1")
        second = handler.handle(_request({"DBInstanceIdentifier": "db1"}), context)

        assert first.is_in_progress
        assert second.is_success
        assert state.call_count("DeleteDBInstance") == 1

    def test_missing_instance_fails(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        result = DeleteHandler(clients, config).handle(_request({"DBInstanceIdentifier": "db1"}))

        assert result.is_failed
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_already_deleting_is_awaited(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.add_instance("db1", status="deleting", pending_polls=NEVER)
        handler = DeleteHandler(clients, config)
        context = ProgressContext()

        first = handler.handle(_request({"DBInstanceIdentifier": "db1"}), context)
        state.converge("db1")
        second = handler.handle(_request({"DBInstanceIdentifier": "db1"}), context)

        assert first.is_in_progress
        assert second.is_success

    def test_stabilization_timeout(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.settle_polls = NEVER
        state.add_instance("db1")
        handler = DeleteHandler(clients, config)
        context = ProgressContext()

        results = [
            handler.handle(_request({"DBInstanceIdentifier": "db1"}), context)
            for _ in range(config.max_stabilization_attempts + 1)
        ]

        assert all(r.is_in_progress for r in results[:-1])
        assert results[-1].is_failed
        assert results[-1].error_code == ErrorCode.GENERAL_SERVICE_EXCEPTION
        assert state.call_count("DeleteDBInstance") == 1


# =============================================================================
# List
# =============================================================================


class TestListHandler:
    """Tests for paginated listing."""

    def test_pages_through_instances(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.page_size = 1
        state.add_instance("db1")
        state.add_instance("db2")
        handler = ListHandler(clients, config)

        first = handler.handle(_request())
        second = handler.handle(_request(nextToken=first.next_token))

        assert [m.db_instance_identifier for m in first.resource_models or []] == ["db1"]
        assert first.next_token == "1"
        assert [m.db_instance_identifier for m in second.resource_models or []] == ["db2"]
        assert second.next_token is None

    def test_list_errors_are_classified(
        self, state: MockRdsState, clients: ProxyClients, config: HandlerConfig
    ) -> None:
        state.inject_error("DescribeDBInstances", "AccessDenied")

        result = ListHandler(clients, config).handle(_request())

        assert result.is_failed
        assert result.error_code == ErrorCode.INVALID_REQUEST
