"""Tests for handler configuration validation."""

from __future__ import annotations

import pytest

from rds_operator.config import (
    DB_INSTANCE_HANDLER_CONFIG_36H,
    DEFAULT_HANDLER_CONFIG,
    ConfigurationError,
    HandlerConfig,
)


class TestHandlerConfig:
    """Tests for HandlerConfig."""

    def test_defaults(self) -> None:
        config = HandlerConfig()

        assert config.backoff_base_seconds == 5
        assert config.backoff_max_seconds == 60
        assert config.max_retry_attempts == 5
        assert config.probing_enabled is True

    def test_36h_preset(self) -> None:
        assert DB_INSTANCE_HANDLER_CONFIG_36H.stabilization_timeout_seconds == 36 * 3600
        assert DB_INSTANCE_HANDLER_CONFIG_36H.max_stabilization_attempts == 36 * 60
        assert DEFAULT_HANDLER_CONFIG.max_stabilization_attempts == 180

    def test_base_above_max_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="must not be lower"):
            HandlerConfig(backoff_base_seconds=120, backoff_max_seconds=60)

    def test_backoff_bounds(self) -> None:
        with pytest.raises(ConfigurationError, match="BACKOFF_BASE_SECONDS"):
            HandlerConfig(backoff_base_seconds=0)
        with pytest.raises(ConfigurationError, match="BACKOFF_MAX_SECONDS"):
            HandlerConfig(backoff_max_seconds=901)

    def test_retry_bounds(self) -> None:
        with pytest.raises(ConfigurationError, match="MAX_RETRY_ATTEMPTS"):
            HandlerConfig(max_retry_attempts=-1)

    def test_timeout_bounds(self) -> None:
        with pytest.raises(ConfigurationError, match="STABILIZATION_TIMEOUT_SECONDS"):
            HandlerConfig(stabilization_timeout_seconds=0)

    def test_all_errors_reported_together(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            HandlerConfig(backoff_base_seconds=0, max_retry_attempts=100)

        assert "BACKOFF_BASE_SECONDS" in str(exc_info.value)
        assert "MAX_RETRY_ATTEMPTS" in str(exc_info.value)


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_prefixed_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RDS_OPERATOR_BACKOFF_BASE_SECONDS", "2")
        monkeypatch.setenv("RDS_OPERATOR_BACKOFF_MAX_SECONDS", "30")
        monkeypatch.setenv("RDS_OPERATOR_MAX_RETRY_ATTEMPTS", "3")
        monkeypatch.setenv("RDS_OPERATOR_STABILIZATION_TIMEOUT_SECONDS", "3600")
        monkeypatch.setenv("RDS_OPERATOR_PROBING_ENABLED", "false")

        config = HandlerConfig.from_env()

        assert config == HandlerConfig(
            backoff_base_seconds=2,
            backoff_max_seconds=30,
            max_retry_attempts=3,
            stabilization_timeout_seconds=3600,
            probing_enabled=False,
        )

    def test_defaults_when_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for key in (
            "BACKOFF_BASE_SECONDS",
            "BACKOFF_MAX_SECONDS",
            "MAX_RETRY_ATTEMPTS",
            "STABILIZATION_TIMEOUT_SECONDS",
            "PROBING_ENABLED",
        ):
            monkeypatch.delenv(f"RDS_OPERATOR_{key}", raising=False)

        assert HandlerConfig.from_env() == HandlerConfig()

    def test_non_integer_is_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RDS_OPERATOR_MAX_RETRY_ATTEMPTS", "many")

        with pytest.raises(ConfigurationError, match="must be an integer"):
            HandlerConfig.from_env()
