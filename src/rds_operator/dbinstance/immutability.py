"""Structural immutability checks for DB instance updates.

A change to any of these attributes cannot be applied in place; the update
is rejected before any mutating call is issued.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ..models import DBInstanceModel

logger = logging.getLogger(__name__)

# Engine changes that are in-place upgrades rather than replacements
ENGINE_UPGRADE_PATHS: frozenset[tuple[str, str]] = frozenset(
    {
        ("aurora", "aurora-mysql"),
        ("oracle-se", "oracle-se2"),
        ("oracle-se1", "oracle-se2"),
        ("oracle-se", "oracle-se2-cdb"),
        ("oracle-se1", "oracle-se2-cdb"),
        ("oracle-ee", "oracle-ee-cdb"),
        ("oracle-se2", "oracle-se2-cdb"),
    }
)


def is_engine_mutable(previous: DBInstanceModel, desired: DBInstanceModel) -> bool:
    if previous.engine is None or desired.engine is None:
        return True
    if previous.engine == desired.engine:
        return True
    return (previous.engine, desired.engine) in ENGINE_UPGRADE_PATHS


def _unchanged(previous: Any, desired: Any) -> bool:
    # An attribute the desired model no longer sets keeps its current value
    return desired is None or previous == desired


def is_storage_encryption_mutable(previous: DBInstanceModel, desired: DBInstanceModel) -> bool:
    # Only disabling encryption is rejected
    return not (previous.storage_encrypted and desired.storage_encrypted is False)


def is_availability_zone_mutable(previous: DBInstanceModel, desired: DBInstanceModel) -> bool:
    if _unchanged(previous.availability_zone, desired.availability_zone):
        return True
    return bool(desired.multi_az)


def immutable_changes(
    previous: DBInstanceModel,
    desired: DBInstanceModel,
    instance: Mapping[str, Any] | None = None,
) -> list[str]:
    """Return the sorted names of attributes desired changes but cannot update in place.

    Args:
        previous: Previous model. When its engine is unknown, the engine is
            taken from the observed instance.
        desired: Desired model.
        instance: Observed DescribeDBInstances entry, if one was fetched.
    """
    if instance is not None and not previous.engine:
        previous = previous.model_copy(update={"engine": str(instance.get("Engine", "")).lower()})

    checks = {
        "Engine": is_engine_mutable(previous, desired),
        "DBName": _unchanged(previous.db_name, desired.db_name),
        "MasterUsername": _unchanged(previous.master_username, desired.master_username),
        "CharacterSetName": _unchanged(previous.character_set_name, desired.character_set_name),
        "StorageEncrypted": is_storage_encryption_mutable(previous, desired),
        "KmsKeyId": _unchanged(previous.kms_key_id, desired.kms_key_id),
        "DBClusterIdentifier": _unchanged(
            previous.db_cluster_identifier, desired.db_cluster_identifier
        ),
        "AvailabilityZone": is_availability_zone_mutable(previous, desired),
    }

    immutable = sorted(name for name, mutable in checks.items() if not mutable)
    if immutable:
        logger.warning(
            "Update changes immutable attributes",
            extra={
                "db_instance_identifier": desired.db_instance_identifier,
                "attributes": immutable,
            },
        )
    return immutable
