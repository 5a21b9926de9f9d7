"""Tests for request and context file loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from rds_operator.config import MAX_CONTEXT_FILE_SIZE_BYTES, MAX_REQUEST_FILE_SIZE_BYTES
from rds_operator.context import ProgressContext
from rds_operator.models import DBInstanceModel, DBSubnetGroupModel
from rds_operator.spec_loader import (
    SpecLoadError,
    load_context,
    load_request,
    parse_request,
    save_context,
)


class TestLoadRequest:
    """Tests for request files."""

    def test_loads_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "request.yaml"
        path.write_text(
            "region: us-east-1\n"
            "desiredResourceState:\n"
            "  DBInstanceIdentifier: db1\n"
            "  Engine: MySQL\n"
            "  AllocatedStorage: 20\n"
            "  Tags:\n"
            "    - Key: env\n"
            "      Value: prod\n"
        )

        request = load_request(path, "db-instance")

        model = request.desired_resource_state
        assert isinstance(model, DBInstanceModel)
        assert model.engine == "mysql"
        assert model.tags[0].key == "env"
        assert request.region == "us-east-1"

    def test_loads_json(self, tmp_path: Path) -> None:
        path = tmp_path / "request.json"
        path.write_text(
            json.dumps(
                {
                    "desiredResourceState": {"DBSubnetGroupName": "g", "SubnetIds": ["s-1"]},
                    "rollback": True,
                }
            )
        )

        request = load_request(path, "db-subnet-group")

        assert isinstance(request.desired_resource_state, DBSubnetGroupModel)
        assert request.rollback is True

    def test_kubernetes_wrapper(self, tmp_path: Path) -> None:
        path = tmp_path / "request.yaml"
        path.write_text(
            "apiVersion: rds.operator/v1\n"
            "kind: DBInstanceRequest\n"
            "spec:\n"
            "  desiredResourceState:\n"
            "    DBInstanceIdentifier: db1\n"
        )

        request = load_request(path, "db-instance")

        assert request.desired_resource_state.db_instance_identifier == "db1"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="not found"):
            load_request(tmp_path / "missing.yaml", "db-instance")

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = tmp_path / "big.yaml"
        path.write_text("x" * (MAX_REQUEST_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="exceeds maximum size"):
            load_request(path, "db-instance")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("desiredResourceState: [unclosed\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_request(path, "db-instance")

    def test_validation_errors_are_listed(self, tmp_path: Path) -> None:
        path = tmp_path / "request.yaml"
        path.write_text("desiredResourceState:\n  AllocatedStorage: -5\n")

        with pytest.raises(SpecLoadError, match="AllocatedStorage"):
            load_request(path, "db-instance")


class TestParseRequest:
    """Tests for decoded request validation."""

    def test_non_mapping(self) -> None:
        with pytest.raises(SpecLoadError, match="must be a mapping"):
            parse_request(["not", "a", "mapping"], "db-instance")

    def test_unknown_resource(self) -> None:
        with pytest.raises(SpecLoadError, match="Unknown resource"):
            parse_request({}, "db-cluster")


class TestContextFiles:
    """Tests for persisted progress contexts."""

    def test_missing_file_is_fresh_context(self, tmp_path: Path) -> None:
        assert load_context(tmp_path / "ctx.json") == ProgressContext()

    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "ctx.json"
        context = ProgressContext()
        context.mark_done("create-db-instance")
        context.put("db-instance-arn", "arn:aws:rds:us-east-1:1:db:db1")
        context.next_attempt("stabilize:create-db-instance")

        save_context(path, context)

        assert load_context(path) == context

    def test_terminal_result_removes_file(self, tmp_path: Path) -> None:
        path = tmp_path / "ctx.json"
        path.write_text("{}")

        save_context(path, None)

        assert not path.exists()

    def test_corrupt_context(self, tmp_path: Path) -> None:
        path = tmp_path / "ctx.json"
        path.write_text('{"bogus:key": 1}')

        with pytest.raises(SpecLoadError, match="Invalid progress context"):
            load_context(path)

    def test_oversized_context(self, tmp_path: Path) -> None:
        path = tmp_path / "ctx.json"
        path.write_text(" " * (MAX_CONTEXT_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="exceeds maximum size"):
            load_context(path)
