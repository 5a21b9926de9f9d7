"""Drift detection between a desired model and the observed resource.

After an update the resource is read back and compared attribute by
attribute with what was requested. Syntactic differences the service
introduces are normalized away first:

- Empty equivalence: [], "", None and missing are the same
- Case: engine names, storage types and the like are case-insensitive
- Order: security group and subnet lists are unordered

Remaining differences are reported as drift. Drift is logged, never failed
on: the read-back result is still the operation's outcome.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Attributes the service never echoes back (write-only or behavioural)
DEFAULT_IGNORED_ATTRIBUTES: frozenset[str] = frozenset(
    {
        "MasterUserPassword",
        "ApplyImmediately",
        "FinalDBSnapshotIdentifier",
        "DeleteAutomatedBackups",
        "AutomaticBackupReplicationKmsKeyId",
        "AutomaticBackupReplicationRetentionPeriod",
        "SourceDBInstanceIdentifier",
        "Tags",
    }
)

DEFAULT_CASE_INSENSITIVE_ATTRIBUTES: frozenset[str] = frozenset(
    {"Engine", "StorageType", "DBParameterGroupName", "OptionGroupName", "DBSubnetGroupName"}
)


@dataclass(frozen=True)
class AttributeDrift:
    """One attribute whose observed value differs from the desired one."""

    attribute: str
    desired: Any
    observed: Any


def _normalize(value: Any, case_insensitive: bool) -> Any:
    if value is None or value == "" or value == [] or value == {}:
        return None
    if isinstance(value, str) and case_insensitive:
        return value.lower()
    if isinstance(value, list):
        return tuple(sorted((_normalize(item, case_insensitive) for item in value), key=str))
    if isinstance(value, dict):
        return tuple(
            sorted((k, _normalize(v, case_insensitive)) for k, v in value.items() if v is not None)
        )
    return value


def detect_drift(
    desired: BaseModel,
    observed: BaseModel,
    ignored: Iterable[str] = DEFAULT_IGNORED_ATTRIBUTES,
    case_insensitive: Iterable[str] = DEFAULT_CASE_INSENSITIVE_ATTRIBUTES,
) -> list[AttributeDrift]:
    """Compare every attribute set on desired with its observed counterpart.

    Attributes unset on desired are left to the service and never drift.
    """
    ignored_set = frozenset(ignored)
    case_insensitive_set = frozenset(case_insensitive)
    desired_values = desired.model_dump(by_alias=True, exclude_none=True)
    observed_values = observed.model_dump(by_alias=True)

    drifts: list[AttributeDrift] = []
    for attribute, value in sorted(desired_values.items()):
        if attribute in ignored_set:
            continue
        folded = attribute in case_insensitive_set
        if _normalize(value, folded) == _normalize(observed_values.get(attribute), folded):
            continue
        drifts.append(AttributeDrift(attribute, value, observed_values.get(attribute)))
    return drifts


def report_resource_drift(
    desired: BaseModel,
    observed: BaseModel,
    resource_type: str,
    operation: str,
    ignored: Iterable[str] = DEFAULT_IGNORED_ATTRIBUTES,
) -> list[AttributeDrift]:
    """Log drift between desired and observed state and return it."""
    drifts = detect_drift(desired, observed, ignored=ignored)
    if drifts:
        logger.warning(
            "Resource drift detected after reconciliation",
            extra={
                "resource_type": resource_type,
                "operation": operation,
                "drifted_attributes": [d.attribute for d in drifts],
                "drift_count": len(drifts),
            },
        )
    else:
        logger.debug(
            "No resource drift detected",
            extra={"resource_type": resource_type, "operation": operation},
        )
    return drifts
