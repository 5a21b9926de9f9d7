"""RDS API Mock for handler testing.

This module provides an in-memory implementation of the RDS and EC2 calls
the handlers make, so every lifecycle operation can be driven across
several invocations without AWS connectivity.

Key Features:
- In-memory DB instances and subnet groups
- Status transitions that converge after N polls or on demand
- Error injection by operation name
- Event emission for asynchronous failure checks
- Call recording for idempotency assertions

Usage:
    from rds_mock import MockRdsState, MockRdsClient, MockEc2Client

    state = MockRdsState()
    state.add_instance("db1")
    clients = ProxyClients(rds=MockRdsClient(state), ec2=MockEc2Client(state))

    result = ReadHandler(clients).handle(request)
    assert state.call_count("DescribeDBInstances") == 1
"""

from .clients import MockEc2Client, MockRdsClient
from .context import MockRdsContext
from .state import (
    ACCOUNT_ID,
    DEFAULT_REGION,
    NEVER,
    MockCall,
    MockDBInstance,
    MockDBSubnetGroup,
    MockRdsState,
    make_client_error,
)

__all__ = [
    "ACCOUNT_ID",
    "DEFAULT_REGION",
    "NEVER",
    "MockCall",
    "MockDBInstance",
    "MockDBSubnetGroup",
    "MockEc2Client",
    "MockRdsClient",
    "MockRdsContext",
    "MockRdsState",
    "make_client_error",
]
