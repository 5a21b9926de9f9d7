"""Translation between resource models and RDS/EC2 API payloads.

Pure functions only: no remote calls, no error handling. Request builders
return plain dicts ready for ``RemoteClient.invoke``; ``*_from_sdk``
functions turn describe responses back into models.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .models import (
    DBInstanceModel,
    DBInstanceRole,
    DBSubnetGroupModel,
    Tag,
    tags_from_dict,
)

MAX_RECORDS = 100

# (model attribute, API parameter) pairs sent on modify when they changed
MODIFIABLE_ATTRIBUTES: tuple[tuple[str, str], ...] = (
    ("db_instance_class", "DBInstanceClass"),
    ("allocated_storage", "AllocatedStorage"),
    ("max_allocated_storage", "MaxAllocatedStorage"),
    ("storage_type", "StorageType"),
    ("iops", "Iops"),
    ("multi_az", "MultiAZ"),
    ("engine_version", "EngineVersion"),
    ("db_parameter_group_name", "DBParameterGroupName"),
    ("option_group_name", "OptionGroupName"),
    ("backup_retention_period", "BackupRetentionPeriod"),
    ("preferred_backup_window", "PreferredBackupWindow"),
    ("preferred_maintenance_window", "PreferredMaintenanceWindow"),
    ("master_user_password", "MasterUserPassword"),
    ("db_subnet_group_name", "DBSubnetGroupName"),
)

# The 2012-09-17 surface predates storage autoscaling and storage types
V12_MODIFIABLE_ATTRIBUTES: tuple[tuple[str, str], ...] = (
    ("db_instance_class", "DBInstanceClass"),
    ("allocated_storage", "AllocatedStorage"),
    ("iops", "Iops"),
    ("multi_az", "MultiAZ"),
    ("engine_version", "EngineVersion"),
    ("db_parameter_group_name", "DBParameterGroupName"),
    ("option_group_name", "OptionGroupName"),
    ("backup_retention_period", "BackupRetentionPeriod"),
    ("preferred_backup_window", "PreferredBackupWindow"),
    ("preferred_maintenance_window", "PreferredMaintenanceWindow"),
    ("master_user_password", "MasterUserPassword"),
)

CREATE_ATTRIBUTES: tuple[tuple[str, str], ...] = (
    ("db_instance_identifier", "DBInstanceIdentifier"),
    ("engine", "Engine"),
    ("engine_version", "EngineVersion"),
    ("engine_lifecycle_support", "EngineLifecycleSupport"),
    ("db_instance_class", "DBInstanceClass"),
    ("allocated_storage", "AllocatedStorage"),
    ("max_allocated_storage", "MaxAllocatedStorage"),
    ("storage_type", "StorageType"),
    ("iops", "Iops"),
    ("storage_encrypted", "StorageEncrypted"),
    ("kms_key_id", "KmsKeyId"),
    ("multi_az", "MultiAZ"),
    ("availability_zone", "AvailabilityZone"),
    ("db_subnet_group_name", "DBSubnetGroupName"),
    ("db_cluster_identifier", "DBClusterIdentifier"),
    ("db_name", "DBName"),
    ("master_username", "MasterUsername"),
    ("master_user_password", "MasterUserPassword"),
    ("character_set_name", "CharacterSetName"),
    ("db_parameter_group_name", "DBParameterGroupName"),
    ("option_group_name", "OptionGroupName"),
    ("backup_retention_period", "BackupRetentionPeriod"),
    ("preferred_backup_window", "PreferredBackupWindow"),
    ("preferred_maintenance_window", "PreferredMaintenanceWindow"),
)

READ_REPLICA_ATTRIBUTES: tuple[tuple[str, str], ...] = (
    ("db_instance_identifier", "DBInstanceIdentifier"),
    ("source_db_instance_identifier", "SourceDBInstanceIdentifier"),
    ("db_instance_class", "DBInstanceClass"),
    ("storage_type", "StorageType"),
    ("iops", "Iops"),
    ("kms_key_id", "KmsKeyId"),
    ("multi_az", "MultiAZ"),
    ("availability_zone", "AvailabilityZone"),
    ("db_subnet_group_name", "DBSubnetGroupName"),
    ("db_parameter_group_name", "DBParameterGroupName"),
    ("option_group_name", "OptionGroupName"),
)


def _sdk_tags(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def _pick(model: DBInstanceModel, attributes: tuple[tuple[str, str], ...]) -> dict[str, Any]:
    request: dict[str, Any] = {}
    for attribute, parameter in attributes:
        value = getattr(model, attribute)
        if value is not None:
            request[parameter] = value
    return request


def _major_version(version: str | None) -> str:
    if not version:
        return ""
    parts = version.split(".")
    # Engines before MySQL 8 / Postgres 10 carried the major in two components
    if parts[0] in ("5", "9") and len(parts) > 1:
        return ".".join(parts[:2])
    return parts[0]


# =============================================================================
# DB instance requests
# =============================================================================


def describe_db_instances_request(model: DBInstanceModel) -> dict[str, Any]:
    return {"DBInstanceIdentifier": model.db_instance_identifier}


def list_db_instances_request(next_token: str | None) -> dict[str, Any]:
    request: dict[str, Any] = {"MaxRecords": MAX_RECORDS}
    if next_token:
        request["Marker"] = next_token
    return request


def create_db_instance_request(model: DBInstanceModel, tags: Mapping[str, str]) -> dict[str, Any]:
    request = _pick(model, CREATE_ATTRIBUTES)
    if model.vpc_security_groups:
        request["VpcSecurityGroupIds"] = list(model.vpc_security_groups)
    if model.db_security_groups:
        request["DBSecurityGroups"] = list(model.db_security_groups)
    if tags:
        request["Tags"] = _sdk_tags(tags)
    return request


def create_db_instance_read_replica_request(
    model: DBInstanceModel, tags: Mapping[str, str]
) -> dict[str, Any]:
    request = _pick(model, READ_REPLICA_ATTRIBUTES)
    if model.vpc_security_groups:
        request["VpcSecurityGroupIds"] = list(model.vpc_security_groups)
    if tags:
        request["Tags"] = _sdk_tags(tags)
    return request


def _changed(
    previous: DBInstanceModel | None,
    desired: DBInstanceModel,
    attributes: tuple[tuple[str, str], ...],
) -> dict[str, Any]:
    request: dict[str, Any] = {}
    for attribute, parameter in attributes:
        value = getattr(desired, attribute)
        if value is None:
            continue
        if previous is not None and getattr(previous, attribute) == value:
            continue
        request[parameter] = value
    return request


def modify_db_instance_request(
    previous: DBInstanceModel | None,
    desired: DBInstanceModel,
    instance: Mapping[str, Any] | None,
    rollback: bool,
) -> dict[str, Any]:
    """Build a ModifyDBInstance request on the current API surface.

    Only changed attributes are sent. The observed instance lets the request
    skip values the resource already has, e.g. a storage size that was
    already increased by the storage-full step.
    """
    request: dict[str, Any] = {
        "DBInstanceIdentifier": desired.db_instance_identifier,
        "ApplyImmediately": desired.apply_immediately,
    }
    request.update(_changed(previous, desired, MODIFIABLE_ATTRIBUTES))

    vpc_groups = sorted(desired.vpc_security_groups)
    if vpc_groups and (previous is None or sorted(previous.vpc_security_groups) != vpc_groups):
        request["VpcSecurityGroupIds"] = vpc_groups

    if previous is not None and previous.engine and desired.engine != previous.engine:
        request["Engine"] = desired.engine

    if instance is not None:
        observed_storage = instance.get("AllocatedStorage")
        desired_storage = request.get("AllocatedStorage")
        if desired_storage is not None and observed_storage is not None:
            if observed_storage >= desired_storage:
                request.pop("AllocatedStorage")
        if request.get("EngineVersion") == instance.get("EngineVersion"):
            request.pop("EngineVersion")

    if "EngineVersion" in request and previous is not None:
        if _major_version(previous.engine_version) != _major_version(desired.engine_version):
            request["AllowMajorVersionUpgrade"] = True

    if rollback:
        # Never trigger a fresh engine upgrade while rolling back
        request.pop("AllowMajorVersionUpgrade", None)

    return request


def modify_db_instance_request_v12(
    previous: DBInstanceModel | None,
    desired: DBInstanceModel,
    rollback: bool,
) -> dict[str, Any]:
    """Build a ModifyDBInstance request on the 2012-09-17 API surface."""
    request: dict[str, Any] = {
        "DBInstanceIdentifier": desired.db_instance_identifier,
        "ApplyImmediately": desired.apply_immediately,
    }
    request.update(_changed(previous, desired, V12_MODIFIABLE_ATTRIBUTES))
    groups = sorted(desired.db_security_groups)
    if groups and (previous is None or sorted(previous.db_security_groups) != groups):
        request["DBSecurityGroups"] = groups
    if "EngineVersion" in request and previous is not None and not rollback:
        if _major_version(previous.engine_version) != _major_version(desired.engine_version):
            request["AllowMajorVersionUpgrade"] = True
    return request


def update_allocated_storage_request(model: DBInstanceModel) -> dict[str, Any]:
    return {
        "DBInstanceIdentifier": model.db_instance_identifier,
        "AllocatedStorage": model.allocated_storage,
        "ApplyImmediately": True,
    }


def promote_read_replica_request(model: DBInstanceModel) -> dict[str, Any]:
    request: dict[str, Any] = {"DBInstanceIdentifier": model.db_instance_identifier}
    if model.backup_retention_period is not None:
        request["BackupRetentionPeriod"] = model.backup_retention_period
    if model.preferred_backup_window:
        request["PreferredBackupWindow"] = model.preferred_backup_window
    return request


def reboot_db_instance_request(model: DBInstanceModel) -> dict[str, Any]:
    return {"DBInstanceIdentifier": model.db_instance_identifier}


def delete_db_instance_request(model: DBInstanceModel) -> dict[str, Any]:
    request: dict[str, Any] = {"DBInstanceIdentifier": model.db_instance_identifier}
    if model.final_db_snapshot_identifier:
        request["FinalDBSnapshotIdentifier"] = model.final_db_snapshot_identifier
        request["SkipFinalSnapshot"] = False
    else:
        request["SkipFinalSnapshot"] = True
    if model.delete_automated_backups is not None:
        request["DeleteAutomatedBackups"] = model.delete_automated_backups
    return request


def add_role_request(model: DBInstanceModel, role: DBInstanceRole) -> dict[str, Any]:
    request = {"DBInstanceIdentifier": model.db_instance_identifier, "RoleArn": role.role_arn}
    if role.feature_name:
        request["FeatureName"] = role.feature_name
    return request


def remove_role_request(model: DBInstanceModel, role: DBInstanceRole) -> dict[str, Any]:
    return add_role_request(model, role)


def describe_db_parameter_groups_request(name: str) -> dict[str, Any]:
    return {"DBParameterGroupName": name}


def describe_db_engine_versions_request(
    family: str, engine: str | None, engine_version: str | None
) -> dict[str, Any]:
    request: dict[str, Any] = {"DBParameterGroupFamily": family}
    if engine:
        request["Engine"] = engine
    if engine_version:
        request["EngineVersion"] = engine_version
    return request


def describe_db_cluster_request(cluster_identifier: str) -> dict[str, Any]:
    return {"DBClusterIdentifier": cluster_identifier}


def describe_default_security_group_request(vpc_id: str) -> dict[str, Any]:
    return {
        "Filters": [
            {"Name": "vpc-id", "Values": [vpc_id]},
            {"Name": "group-name", "Values": ["default"]},
        ]
    }


def start_backup_replication_request(
    source_arn: str, retention_period: int | None, kms_key_id: str | None
) -> dict[str, Any]:
    request: dict[str, Any] = {"SourceDBInstanceArn": source_arn}
    if retention_period is not None:
        request["BackupRetentionPeriod"] = retention_period
    if kms_key_id:
        request["KmsKeyId"] = kms_key_id
    return request


def stop_backup_replication_request(source_arn: str) -> dict[str, Any]:
    return {"SourceDBInstanceArn": source_arn}


# =============================================================================
# DB instance responses
# =============================================================================


def region_from_arn(arn: str | None) -> str | None:
    if not arn:
        return None
    parts = arn.split(":")
    return parts[3] if len(parts) > 3 and parts[3] else None


def db_instance_from_sdk(instance: Mapping[str, Any]) -> DBInstanceModel:
    """Translate a DescribeDBInstances entry into a model."""
    parameter_groups = instance.get("DBParameterGroups") or [{}]
    option_groups = instance.get("OptionGroupMemberships") or [{}]
    replications = instance.get("DBInstanceAutomatedBackupsReplications") or []
    endpoint = instance.get("Endpoint") or {}

    return DBInstanceModel(
        db_instance_identifier=instance.get("DBInstanceIdentifier"),
        engine=instance.get("Engine"),
        engine_version=instance.get("EngineVersion"),
        engine_lifecycle_support=instance.get("EngineLifecycleSupport"),
        db_instance_class=instance.get("DBInstanceClass"),
        allocated_storage=instance.get("AllocatedStorage"),
        max_allocated_storage=instance.get("MaxAllocatedStorage"),
        storage_type=instance.get("StorageType"),
        iops=instance.get("Iops"),
        storage_encrypted=instance.get("StorageEncrypted"),
        kms_key_id=instance.get("KmsKeyId"),
        multi_az=instance.get("MultiAZ"),
        availability_zone=instance.get("AvailabilityZone"),
        db_subnet_group_name=(instance.get("DBSubnetGroup") or {}).get("DBSubnetGroupName"),
        vpc_security_groups=[
            group["VpcSecurityGroupId"] for group in instance.get("VpcSecurityGroups") or []
        ],
        db_security_groups=[
            group["DBSecurityGroupName"] for group in instance.get("DBSecurityGroups") or []
        ],
        db_cluster_identifier=instance.get("DBClusterIdentifier"),
        source_db_instance_identifier=instance.get("ReadReplicaSourceDBInstanceIdentifier"),
        db_name=instance.get("DBName"),
        master_username=instance.get("MasterUsername"),
        character_set_name=instance.get("CharacterSetName"),
        db_parameter_group_name=parameter_groups[0].get("DBParameterGroupName"),
        option_group_name=option_groups[0].get("OptionGroupName"),
        backup_retention_period=instance.get("BackupRetentionPeriod"),
        preferred_backup_window=instance.get("PreferredBackupWindow"),
        preferred_maintenance_window=instance.get("PreferredMaintenanceWindow"),
        automatic_backup_replication_region=(
            region_from_arn(replications[0].get("DBInstanceAutomatedBackupsArn"))
            if replications
            else None
        ),
        associated_roles=[
            DBInstanceRole(role_arn=role["RoleArn"], feature_name=role.get("FeatureName"))
            for role in instance.get("AssociatedRoles") or []
        ],
        tags=[Tag(key=t["Key"], value=t.get("Value", "")) for t in instance.get("TagList") or []],
        db_instance_arn=instance.get("DBInstanceArn"),
        dbi_resource_id=instance.get("DbiResourceId"),
        endpoint_address=endpoint.get("Address"),
        endpoint_port=endpoint.get("Port"),
    )


# =============================================================================
# DB subnet group
# =============================================================================


def describe_db_subnet_groups_request(model: DBSubnetGroupModel) -> dict[str, Any]:
    return {"DBSubnetGroupName": model.db_subnet_group_name}


def list_db_subnet_groups_request(next_token: str | None) -> dict[str, Any]:
    request: dict[str, Any] = {"MaxRecords": MAX_RECORDS}
    if next_token:
        request["Marker"] = next_token
    return request


def create_db_subnet_group_request(
    model: DBSubnetGroupModel, tags: Mapping[str, str]
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "DBSubnetGroupName": model.db_subnet_group_name,
        "DBSubnetGroupDescription": model.db_subnet_group_description or "",
        "SubnetIds": list(model.subnet_ids),
    }
    if tags:
        request["Tags"] = _sdk_tags(tags)
    return request


def modify_db_subnet_group_request(model: DBSubnetGroupModel) -> dict[str, Any]:
    request: dict[str, Any] = {
        "DBSubnetGroupName": model.db_subnet_group_name,
        "SubnetIds": list(model.subnet_ids),
    }
    if model.db_subnet_group_description is not None:
        request["DBSubnetGroupDescription"] = model.db_subnet_group_description
    return request


def delete_db_subnet_group_request(model: DBSubnetGroupModel) -> dict[str, Any]:
    return {"DBSubnetGroupName": model.db_subnet_group_name}


def db_subnet_group_from_sdk(
    group: Mapping[str, Any], tags: Mapping[str, str] | None = None
) -> DBSubnetGroupModel:
    return DBSubnetGroupModel(
        db_subnet_group_name=group.get("DBSubnetGroupName"),
        db_subnet_group_description=group.get("DBSubnetGroupDescription"),
        subnet_ids=[subnet["SubnetIdentifier"] for subnet in group.get("Subnets") or []],
        tags=tags_from_dict(dict(tags or {})),
        db_subnet_group_arn=group.get("DBSubnetGroupArn"),
        vpc_id=group.get("VpcId"),
    )
