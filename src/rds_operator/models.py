"""Pydantic models for resource state and handler requests.

These models provide:
1. Type-safe parsing of host-supplied request payloads (JSON or YAML)
2. CloudFormation-style PascalCase aliases, with snake_case access in code
3. Set views of secondary collections (tags, roles) for diffing
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Shared
# =============================================================================


class Tag(BaseModel):
    """Key-value resource tag."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    key: str = Field(alias="Key", min_length=1, max_length=128)
    value: str = Field("", alias="Value", max_length=256)


def tags_to_dict(tags: list[Tag] | None) -> dict[str, str]:
    """Convert a tag list to a mapping. Later duplicates win."""
    return {tag.key: tag.value for tag in tags or []}


def tags_from_dict(tags: dict[str, str]) -> list[Tag]:
    return [Tag(key=key, value=value) for key, value in sorted(tags.items())]


# =============================================================================
# DB Instance
# =============================================================================


class DBInstanceRole(BaseModel):
    """IAM role association on a DB instance."""

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    role_arn: str = Field(alias="RoleArn", min_length=1)
    feature_name: str | None = Field(None, alias="FeatureName")


class DBInstanceModel(BaseModel):
    """Desired or observed state of a DB instance."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Identity
    db_instance_identifier: str | None = Field(None, alias="DBInstanceIdentifier")

    # Engine
    engine: str | None = Field(None, alias="Engine")
    engine_version: str | None = Field(None, alias="EngineVersion")
    engine_lifecycle_support: str | None = Field(None, alias="EngineLifecycleSupport")
    db_instance_class: str | None = Field(None, alias="DBInstanceClass")

    # Storage
    allocated_storage: int | None = Field(None, alias="AllocatedStorage", ge=0)
    max_allocated_storage: int | None = Field(None, alias="MaxAllocatedStorage", ge=0)
    storage_type: str | None = Field(None, alias="StorageType")
    iops: int | None = Field(None, alias="Iops", ge=0)
    storage_encrypted: bool | None = Field(None, alias="StorageEncrypted")
    kms_key_id: str | None = Field(None, alias="KmsKeyId")

    # Placement
    multi_az: bool | None = Field(None, alias="MultiAZ")
    availability_zone: str | None = Field(None, alias="AvailabilityZone")
    db_subnet_group_name: str | None = Field(None, alias="DBSubnetGroupName")
    vpc_security_groups: list[str] = Field(default_factory=list, alias="VPCSecurityGroups")
    db_security_groups: list[str] = Field(default_factory=list, alias="DBSecurityGroups")
    db_cluster_identifier: str | None = Field(None, alias="DBClusterIdentifier")
    source_db_instance_identifier: str | None = Field(None, alias="SourceDBInstanceIdentifier")

    # Database
    db_name: str | None = Field(None, alias="DBName")
    master_username: str | None = Field(None, alias="MasterUsername")
    master_user_password: str | None = Field(None, alias="MasterUserPassword")
    character_set_name: str | None = Field(None, alias="CharacterSetName")
    db_parameter_group_name: str | None = Field(None, alias="DBParameterGroupName")
    option_group_name: str | None = Field(None, alias="OptionGroupName")

    # Backups and maintenance
    backup_retention_period: int | None = Field(None, alias="BackupRetentionPeriod", ge=0)
    preferred_backup_window: str | None = Field(None, alias="PreferredBackupWindow")
    preferred_maintenance_window: str | None = Field(None, alias="PreferredMaintenanceWindow")
    delete_automated_backups: bool | None = Field(None, alias="DeleteAutomatedBackups")
    final_db_snapshot_identifier: str | None = Field(None, alias="FinalDBSnapshotIdentifier")
    automatic_backup_replication_region: str | None = Field(
        None, alias="AutomaticBackupReplicationRegion"
    )
    automatic_backup_replication_kms_key_id: str | None = Field(
        None, alias="AutomaticBackupReplicationKmsKeyId"
    )
    automatic_backup_replication_retention_period: int | None = Field(
        None, alias="AutomaticBackupReplicationRetentionPeriod", ge=1
    )

    # Behaviour
    apply_immediately: bool = Field(True, alias="ApplyImmediately")

    # Secondary collections
    associated_roles: list[DBInstanceRole] = Field(default_factory=list, alias="AssociatedRoles")
    tags: list[Tag] = Field(default_factory=list, alias="Tags")

    # Read-only outputs
    db_instance_arn: str | None = Field(None, alias="DBInstanceArn")
    dbi_resource_id: str | None = Field(None, alias="DbiResourceId")
    endpoint_address: str | None = Field(None, alias="EndpointAddress")
    endpoint_port: int | None = Field(None, alias="EndpointPort")

    @field_validator("engine")
    @classmethod
    def normalize_engine(cls, v: str | None) -> str | None:
        return v.lower() if v else v


# =============================================================================
# DB Subnet Group
# =============================================================================


class DBSubnetGroupModel(BaseModel):
    """Desired or observed state of a DB subnet group."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    db_subnet_group_name: str | None = Field(None, alias="DBSubnetGroupName", max_length=255)
    db_subnet_group_description: str | None = Field(None, alias="DBSubnetGroupDescription")
    subnet_ids: list[str] = Field(default_factory=list, alias="SubnetIds")
    tags: list[Tag] = Field(default_factory=list, alias="Tags")

    # Read-only outputs
    db_subnet_group_arn: str | None = Field(None, alias="DBSubnetGroupArn")
    vpc_id: str | None = Field(None, alias="VpcId")


# =============================================================================
# Handler request
# =============================================================================

ModelT = TypeVar("ModelT", bound=BaseModel)


class HandlerRequest(BaseModel, Generic[ModelT]):
    """One invocation's input as handed over by the host scheduler."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    desired_resource_state: ModelT | None = Field(None, alias="desiredResourceState")
    previous_resource_state: ModelT | None = Field(None, alias="previousResourceState")

    # Stack-level tags (desired and previous)
    desired_resource_tags: dict[str, str] = Field(
        default_factory=dict, alias="desiredResourceTags"
    )
    previous_resource_tags: dict[str, str] = Field(
        default_factory=dict, alias="previousResourceTags"
    )

    # Tags owned by the host platform
    system_tags: dict[str, str] = Field(default_factory=dict, alias="systemTags")
    previous_system_tags: dict[str, str] = Field(
        default_factory=dict, alias="previousSystemTags"
    )

    rollback: bool = Field(False, alias="rollback")
    driftable: bool = Field(False, alias="driftable")
    region: str | None = Field(None, alias="region")
    aws_account_id: str | None = Field(None, alias="awsAccountId")
    client_request_token: str | None = Field(None, alias="clientRequestToken")
    next_token: str | None = Field(None, alias="nextToken")
