"""Handler request and progress context loading with validation.

SECURITY: All file operations enforce size limits. Input validation is
performed at the boundary; nothing unvalidated reaches a handler.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_CONTEXT_FILE_SIZE_BYTES, MAX_REQUEST_FILE_SIZE_BYTES
from .context import ContextSerializationError, ProgressContext
from .models import DBInstanceModel, DBSubnetGroupModel, HandlerRequest

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a request or context file cannot be loaded or validated."""

    pass


RESOURCE_MODELS: dict[str, type[BaseModel]] = {
    "db-instance": DBInstanceModel,
    "db-subnet-group": DBSubnetGroupModel,
}


def get_model_class(resource: str) -> type[BaseModel]:
    """Get the model class for a resource kind.

    Raises:
        ValueError: If the resource kind is not recognized.
    """
    model_class = RESOURCE_MODELS.get(resource)
    if model_class is None:
        raise ValueError(f"Unknown resource '{resource}'. Valid resources: {list(RESOURCE_MODELS)}")
    return model_class


def _read_bounded(path: Path, max_bytes: int, kind: str) -> str:
    if not path.exists():
        raise SpecLoadError(f"{kind} file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {kind} file {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{kind} file exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {kind} file {path}: {e}") from e


def parse_request(raw_data: Any, resource: str, source: str = "<request>") -> HandlerRequest[Any]:
    """Validate a decoded request document.

    Both the flat host format and a Kubernetes-style wrapper (apiVersion,
    kind, spec) are accepted.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Request must be a mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        request_data = raw_data.get("spec", {})
        if not isinstance(request_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        request_data = raw_data

    try:
        model_class = get_model_class(resource)
    except ValueError as e:
        raise SpecLoadError(str(e)) from e

    try:
        request_class = HandlerRequest[model_class]  # type: ignore[valid-type]
        request = request_class.model_validate(request_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e

    return request


def load_request(path: Path, resource: str) -> HandlerRequest[Any]:
    """Load and validate a handler request from YAML or JSON.

    Args:
        path: Request file. JSON is valid YAML, so one loader serves both.
        resource: Resource kind ("db-instance", "db-subnet-group").

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    content = _read_bounded(path, MAX_REQUEST_FILE_SIZE_BYTES, "Request")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    request = parse_request(raw_data, resource, str(path))
    logger.info("Loaded %s request from %s", resource, path)
    return request


def load_context(path: Path) -> ProgressContext:
    """Load a persisted progress context; a missing or empty file is a fresh one."""
    if not path.exists():
        return ProgressContext()

    content = _read_bounded(path, MAX_CONTEXT_FILE_SIZE_BYTES, "Context")
    try:
        return ProgressContext.from_json(content)
    except ContextSerializationError as e:
        raise SpecLoadError(f"Invalid progress context in {path}: {e}") from e


def save_context(path: Path, context: ProgressContext | None) -> None:
    """Persist a context for the next tick; a terminal result removes the file."""
    if context is None:
        path.unlink(missing_ok=True)
        return
    try:
        path.write_text(context.to_json() + "\n", encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to write context file {path}: {e}") from e
