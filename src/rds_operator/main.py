"""Handler routing and process-wide logging setup.

The host scheduler calls ``handle_request`` once per tick with the request,
the context it persisted from the previous tick, and clients carrying the
caller's credentials. Nothing here keeps state between calls.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from datetime import UTC
from typing import Any

from .client import Boto3RemoteClient, ProxyClients
from .config import DB_INSTANCE_HANDLER_CONFIG_36H, DEFAULT_HANDLER_CONFIG, HandlerConfig
from .context import ProgressContext
from .dbinstance import handlers as db_instance_handlers
from .dbinstance.update import UpdateHandler as DBInstanceUpdateHandler
from .dbsubnetgroup import handlers as db_subnet_group_handlers
from .models import HandlerRequest
from .progress import ProgressEvent
from .request_logger import RequestLogger

ACTIONS = ("create", "read", "update", "delete", "list")

HANDLERS: dict[tuple[str, str], type[Any]] = {
    ("db-instance", "create"): db_instance_handlers.CreateHandler,
    ("db-instance", "read"): db_instance_handlers.ReadHandler,
    ("db-instance", "update"): DBInstanceUpdateHandler,
    ("db-instance", "delete"): db_instance_handlers.DeleteHandler,
    ("db-instance", "list"): db_instance_handlers.ListHandler,
    ("db-subnet-group", "create"): db_subnet_group_handlers.CreateHandler,
    ("db-subnet-group", "read"): db_subnet_group_handlers.ReadHandler,
    ("db-subnet-group", "update"): db_subnet_group_handlers.UpdateHandler,
    ("db-subnet-group", "delete"): db_subnet_group_handlers.DeleteHandler,
    ("db-subnet-group", "list"): db_subnet_group_handlers.ListHandler,
}

RESOURCE_TYPES = {
    "db-instance": "AWS::RDS::DBInstance",
    "db-subnet-group": "AWS::RDS::DBSubnetGroup",
}

# DB instance operations may legitimately run for more than a day
DEFAULT_CONFIGS: dict[str, HandlerConfig] = {
    "db-instance": DB_INSTANCE_HANDLER_CONFIG_36H,
    "db-subnet-group": DEFAULT_HANDLER_CONFIG,
}


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in (
                    "name",
                    "msg",
                    "args",
                    "created",
                    "filename",
                    "funcName",
                    "levelname",
                    "levelno",
                    "lineno",
                    "module",
                    "msecs",
                    "pathname",
                    "process",
                    "processName",
                    "relativeCreated",
                    "stack_info",
                    "exc_info",
                    "exc_text",
                    "thread",
                    "threadName",
                    "taskName",
                    "message",
                ):
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_handler_class(resource: str, action: str) -> type[Any]:
    """Look up the handler class for a resource and lifecycle action.

    Raises:
        ValueError: If the combination is not supported.
    """
    handler_class = HANDLERS.get((resource, action))
    if handler_class is None:
        raise ValueError(
            f"Unsupported resource/action '{resource} {action}'. "
            f"Resources: {sorted(RESOURCE_TYPES)}, actions: {list(ACTIONS)}"
        )
    return handler_class


def build_clients(
    region: str,
    credentials: Mapping[str, str] | None,
    request_logger: RequestLogger,
) -> ProxyClients:
    """Create logging boto3 clients with the caller's credentials injected."""
    return ProxyClients.with_logging(
        rds=Boto3RemoteClient.from_credentials("rds", region, credentials),
        ec2=Boto3RemoteClient.from_credentials("ec2", region, credentials),
        request_logger=request_logger,
    )


def handle_request(
    resource: str,
    action: str,
    request: HandlerRequest[Any],
    context: ProgressContext | None,
    clients: ProxyClients,
    config: HandlerConfig | None = None,
) -> ProgressEvent:
    """Run one invocation of a lifecycle handler.

    Args:
        resource: Resource kind ("db-instance", "db-subnet-group").
        action: Lifecycle action (create, read, update, delete, list).
        request: Validated request.
        context: Context returned by the previous invocation, or None.
        clients: Remote clients for this invocation.
        config: Handler configuration; defaults per resource kind.

    Returns:
        The event for the host scheduler. IN_PROGRESS events carry the
        context to hand back on the next invocation.
    """
    handler_class = get_handler_class(resource, action)
    handler = handler_class(clients, config or DEFAULT_CONFIGS[resource])
    result: ProgressEvent = handler.handle(request, context)
    return result
