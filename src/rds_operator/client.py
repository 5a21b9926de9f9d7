"""Remote client interface and its boto3-backed implementation.

Handlers talk to the cloud only through ``RemoteClient``: a single
``invoke`` for request/response calls plus ``paginate`` and ``stream``
variants with identical error semantics (botocore exceptions propagate).
``LoggingRemoteClient`` decorates any client with request logging.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from botocore import xform_name
from botocore.config import Config as BotoConfig
from botocore.response import StreamingBody

from .request_logger import RequestLogger

# The handlers own retry policy; botocore's own retries are kept minimal so a
# single invocation stays within its time slice
BOTO_CLIENT_CONFIG = BotoConfig(retries={"max_attempts": 2, "mode": "standard"})


class RemoteClient(Protocol):
    """Narrow interface consumed by the reconciliation steps."""

    def invoke(self, operation: str, request: Mapping[str, Any]) -> dict[str, Any]: ...

    def paginate(self, operation: str, request: Mapping[str, Any]) -> Iterator[dict[str, Any]]: ...

    def stream(self, operation: str, request: Mapping[str, Any]) -> bytes: ...

    def for_region(self, region: str) -> RemoteClient: ...


class Boto3RemoteClient:
    """RemoteClient backed by a boto3 service client.

    Operation names are API names (``DescribeDBInstances``); they are mapped
    to boto3 method names with botocore's own ``xform_name``.
    """

    def __init__(self, session: boto3.session.Session, service_name: str, region: str) -> None:
        self._session = session
        self._service_name = service_name
        self._region = region
        self._client = session.client(service_name, region_name=region, config=BOTO_CLIENT_CONFIG)

    @classmethod
    def from_credentials(
        cls,
        service_name: str,
        region: str,
        credentials: Mapping[str, str] | None = None,
    ) -> Boto3RemoteClient:
        """Build a client with host-supplied credentials injected.

        Args:
            service_name: boto3 service name ("rds", "ec2").
            region: Region name.
            credentials: Mapping with accessKeyId, secretAccessKey and
                optional sessionToken. Falls back to the default chain when
                omitted.
        """
        if credentials:
            session = boto3.session.Session(
                aws_access_key_id=credentials.get("accessKeyId"),
                aws_secret_access_key=credentials.get("secretAccessKey"),
                aws_session_token=credentials.get("sessionToken"),
                region_name=region,
            )
        else:
            session = boto3.session.Session(region_name=region)
        return cls(session, service_name, region)

    @property
    def region(self) -> str:
        return self._region

    def invoke(self, operation: str, request: Mapping[str, Any]) -> dict[str, Any]:
        method = getattr(self._client, xform_name(operation))
        response: dict[str, Any] = method(**request)
        return response

    def paginate(self, operation: str, request: Mapping[str, Any]) -> Iterator[dict[str, Any]]:
        paginator = self._client.get_paginator(xform_name(operation))
        yield from paginator.paginate(**request)

    def stream(self, operation: str, request: Mapping[str, Any]) -> bytes:
        response = self.invoke(operation, request)
        for value in response.values():
            if isinstance(value, StreamingBody):
                return value.read()
        return b""

    def for_region(self, region: str) -> Boto3RemoteClient:
        return Boto3RemoteClient(self._session, self._service_name, region)


class LoggingRemoteClient:
    """RemoteClient decorator that records every request and response."""

    def __init__(self, client: RemoteClient, request_logger: RequestLogger) -> None:
        self._client = client
        self._request_logger = request_logger

    @property
    def wrapped(self) -> RemoteClient:
        return self._client

    def invoke(self, operation: str, request: Mapping[str, Any]) -> dict[str, Any]:
        self._request_logger.log_request(operation, request)
        try:
            response = self._client.invoke(operation, request)
        except Exception as e:
            self._request_logger.log_and_raise(operation, e)
        self._request_logger.log_response(operation, response)
        return response

    def paginate(self, operation: str, request: Mapping[str, Any]) -> Iterator[dict[str, Any]]:
        self._request_logger.log_request(operation, request)
        try:
            yield from self._client.paginate(operation, request)
        except Exception as e:
            self._request_logger.log_and_raise(operation, e)
        self._request_logger.log_omitted(operation)

    def stream(self, operation: str, request: Mapping[str, Any]) -> bytes:
        self._request_logger.log_request(operation, request)
        try:
            data = self._client.stream(operation, request)
        except Exception as e:
            self._request_logger.log_and_raise(operation, e)
        self._request_logger.log_omitted(operation)
        return data

    def for_region(self, region: str) -> LoggingRemoteClient:
        return LoggingRemoteClient(self._client.for_region(region), self._request_logger)


@dataclass(frozen=True)
class ProxyClients:
    """Clients handed to a handler invocation."""

    rds: RemoteClient
    ec2: RemoteClient

    @classmethod
    def with_logging(
        cls, rds: RemoteClient, ec2: RemoteClient, request_logger: RequestLogger
    ) -> ProxyClients:
        return cls(
            rds=LoggingRemoteClient(rds, request_logger),
            ec2=LoggingRemoteClient(ec2, request_logger),
        )

    def rds_in_region(self, region: str) -> RemoteClient:
        return self.rds.for_region(region)
