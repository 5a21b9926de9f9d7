"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for rds_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from rds_mock import MockEc2Client, MockRdsClient, MockRdsState  # noqa: E402

from rds_operator.client import ProxyClients  # noqa: E402
from rds_operator.config import HandlerConfig  # noqa: E402


@pytest.fixture
def state() -> MockRdsState:
    """Fresh mock state; mutations converge immediately."""
    return MockRdsState()


@pytest.fixture
def clients(state: MockRdsState) -> ProxyClients:
    return ProxyClients(rds=MockRdsClient(state), ec2=MockEc2Client(state))


@pytest.fixture
def config() -> HandlerConfig:
    """Small bounds so retry and timeout paths are reachable in a few ticks."""
    return HandlerConfig(
        backoff_base_seconds=5,
        backoff_max_seconds=60,
        max_retry_attempts=2,
        stabilization_timeout_seconds=600,
    )
