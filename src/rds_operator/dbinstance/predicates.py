"""Predicates over observed DB instance state and resource models.

Observed state is the raw ``DescribeDBInstances`` entry (a dict), so the
predicates see exactly what the service reported on the latest poll.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from ..failure_events import is_failure_category
from ..models import DBInstanceModel, DBInstanceRole
from ..translator import region_from_arn

Instance = Mapping[str, Any]

# DBInstanceStatus
STATUS_AVAILABLE = "available"
STATUS_STORAGE_FULL = "storage-full"

# ParameterApplyStatus / OptionGroupMembership.Status
PARAMETER_GROUP_IN_SYNC = "in-sync"
PARAMETER_GROUP_APPLYING = "applying"
PARAMETER_GROUP_PENDING_REBOOT = "pending-reboot"
OPTION_GROUP_IN_SYNC = "in-sync"

VPC_SECURITY_GROUP_ACTIVE = "active"
ROLE_ACTIVE = "ACTIVE"
DOMAIN_MEMBERSHIP_JOINED = ("joined", "kerberos-enabled")

RDS_CUSTOM_ORACLE_ENGINE_PREFIX = "custom-oracle"


def instance_status(instance: Instance) -> str:
    return str(instance.get("DBInstanceStatus", ""))


def is_available(instance: Instance) -> bool:
    return instance_status(instance) == STATUS_AVAILABLE


def is_storage_full(instance: Instance) -> bool:
    return instance_status(instance) == STATUS_STORAGE_FULL


def is_parameter_group_applying(instance: Instance) -> bool:
    return any(
        group.get("ParameterApplyStatus") == PARAMETER_GROUP_APPLYING
        for group in instance.get("DBParameterGroups") or []
    )


def is_vpc_security_groups_active(instance: Instance) -> bool:
    return all(
        group.get("Status") == VPC_SECURITY_GROUP_ACTIVE
        for group in instance.get("VpcSecurityGroups") or []
    )


def is_domain_memberships_joined(instance: Instance) -> bool:
    return all(
        membership.get("Status") in DOMAIN_MEMBERSHIP_JOINED
        for membership in instance.get("DomainMemberships") or []
    )


def has_pending_modifications(instance: Instance) -> bool:
    return bool(instance.get("PendingModifiedValues"))


def stabilized_after_mutate(apply_immediately: bool) -> Callable[[Instance], bool]:
    """Build the predicate used after create, modify, storage and promotion calls.

    With apply_immediately unset, pending modifications are expected to stay
    queued until the next maintenance window and do not block stabilization.
    """

    def predicate(instance: Instance) -> bool:
        if not is_available(instance):
            return False
        if is_parameter_group_applying(instance):
            return False
        if not is_vpc_security_groups_active(instance):
            return False
        if not is_domain_memberships_joined(instance):
            return False
        if apply_immediately and has_pending_modifications(instance):
            return False
        return True

    return predicate


def is_db_parameter_group_in_sync(instance: Instance) -> bool:
    return all(
        group.get("ParameterApplyStatus") == PARAMETER_GROUP_IN_SYNC
        for group in instance.get("DBParameterGroups") or []
    )


def is_option_group_in_sync(instance: Instance) -> bool:
    return all(
        membership.get("Status") == OPTION_GROUP_IN_SYNC
        for membership in instance.get("OptionGroupMemberships") or []
    )


def cluster_member(
    cluster: Mapping[str, Any], db_instance_identifier: str
) -> Mapping[str, Any] | None:
    """Return this instance's entry in a DescribeDBClusters result, if any."""
    for member in cluster.get("DBClusterMembers") or []:
        if str(member.get("DBInstanceIdentifier", "")).lower() == db_instance_identifier.lower():
            return member
    return None


def db_cluster_parameter_group_in_sync(
    db_instance_identifier: str,
) -> Callable[[Mapping[str, Any]], bool]:
    def predicate(cluster: Mapping[str, Any]) -> bool:
        member = cluster_member(cluster, db_instance_identifier)
        if member is None:
            return True
        return member.get("DBClusterParameterGroupStatus") == PARAMETER_GROUP_IN_SYNC

    return predicate


def is_pending_reboot(instance: Instance, apply_immediately: bool) -> bool:
    """True when the first parameter group waits for a reboot we may perform now."""
    groups = instance.get("DBParameterGroups") or []
    if not groups:
        return False
    status = groups[0].get("ParameterApplyStatus")
    return apply_immediately and status == PARAMETER_GROUP_PENDING_REBOOT


def is_cluster_pending_reboot(
    cluster: Mapping[str, Any], db_instance_identifier: str, apply_immediately: bool
) -> bool:
    member = cluster_member(cluster, db_instance_identifier)
    if member is None:
        return False
    return (
        apply_immediately
        and member.get("DBClusterParameterGroupStatus") == PARAMETER_GROUP_PENDING_REBOOT
    )


def is_failure_event(event: Mapping[str, Any]) -> bool:
    """Select events that report an asynchronous failure of a modification."""
    if is_failure_category(event):
        return True
    return str(event.get("Message", "")).lower().startswith("failed to")


# =============================================================================
# Model predicates
# =============================================================================


def is_cluster_member(model: DBInstanceModel) -> bool:
    return bool(model.db_cluster_identifier)


def is_rds_custom_oracle(model: DBInstanceModel) -> bool:
    return bool(model.engine and model.engine.startswith(RDS_CUSTOM_ORACLE_ENGINE_PREFIX))


def is_read_replica(model: DBInstanceModel) -> bool:
    return bool(model.source_db_instance_identifier)


def is_read_replica_promotion(previous: DBInstanceModel | None, desired: DBInstanceModel) -> bool:
    return previous is not None and is_read_replica(previous) and not is_read_replica(desired)


def _replication_region(model: DBInstanceModel) -> str | None:
    return model.automatic_backup_replication_region


def should_stop_backup_replication(
    previous: DBInstanceModel | None, desired: DBInstanceModel
) -> bool:
    if previous is None or not previous.automatic_backup_replication_region:
        return False
    return _replication_region(desired) != _replication_region(previous)


def should_start_backup_replication(
    previous: DBInstanceModel | None, desired: DBInstanceModel
) -> bool:
    if not desired.automatic_backup_replication_region:
        return False
    if previous is None:
        return True
    return _replication_region(desired) != _replication_region(previous)


def roles_settled(
    added: Iterable[DBInstanceRole], removed: Iterable[DBInstanceRole]
) -> Callable[[Instance], bool]:
    """Build a predicate: added roles are ACTIVE and removed roles are gone."""
    added_arns = {role.role_arn for role in added}
    removed_arns = {role.role_arn for role in removed} - added_arns

    def predicate(instance: Instance) -> bool:
        statuses = {
            role.get("RoleArn"): role.get("Status")
            for role in instance.get("AssociatedRoles") or []
        }
        if any(statuses.get(arn) != ROLE_ACTIVE for arn in added_arns):
            return False
        return not any(arn in statuses for arn in removed_arns)

    return predicate


def replicates_to(instance: Instance, region: str) -> bool:
    """True if the instance's automated backups are replicated into region."""
    return any(
        region_from_arn(replication.get("DBInstanceAutomatedBackupsArn")) == region
        for replication in instance.get("DBInstanceAutomatedBackupsReplications") or []
    )
