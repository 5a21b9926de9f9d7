"""Shared plumbing for DB instance lifecycle handlers.

Every handler follows the same outer shape: validate the request, run its
step pipeline against a live progress context, then strip the context from
terminal results. The steps that more than one lifecycle operation needs
(reads, reboots, role associations, backup replication, tags) live here.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, ClassVar

from botocore.exceptions import ClientError

from ..client import ProxyClients
from ..config import DB_INSTANCE_HANDLER_CONFIG_36H, HandlerConfig
from ..context import ProgressContext
from ..errors import (
    ErrorCode,
    InvalidRequestError,
    RequestValidationError,
    handle_exception,
    remote_error_code,
)
from ..guard import exec_once, invoke_once, was_invoked
from ..models import DBInstanceModel, DBInstanceRole, HandlerRequest, tags_to_dict
from ..progress import ProgressEvent
from ..stabilize import await_stable
from ..tagging import TagSet, diff_sets, update_tags
from ..translator import (
    add_role_request,
    db_instance_from_sdk,
    describe_db_cluster_request,
    describe_db_instances_request,
    reboot_db_instance_request,
    remove_role_request,
    start_backup_replication_request,
    stop_backup_replication_request,
)
from ..versioning import ApiVersion, negotiate_api_version
from .predicates import (
    is_cluster_member,
    is_cluster_pending_reboot,
    is_pending_reboot,
    replicates_to,
    roles_settled,
    stabilized_after_mutate,
)
from .rules import (
    AUTOMATIC_BACKUP_REPLICATION_ERROR_RULE_SET,
    DB_INSTANCE_NOT_FOUND_CODES,
    DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
    TAGGING_ERROR_RULE_SET,
    UPDATE_ASSOCIATED_ROLES_ERROR_RULE_SET,
)

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "AWS::RDS::DBInstance"
DB_INSTANCE_SOURCE_TYPE = "db-instance"

# Scratch keys memoised on first use
DB_INSTANCE_ARN = "db-instance-arn"
KMS_KEY_ID = "kms-key-id"

REBOOT_STEP = "reboot-db-instance"
ROLES_STEP = "associated-roles"
VALIDATE_STEP = "validate-request"
READ_STEP = "describe-db-instance"
BACKUP_REPLICATION_MEMO_STEP = "backup-replication-memo"
START_BACKUP_REPLICATION_STEP = "start-backup-replication"
STOP_BACKUP_REPLICATION_STEP = "stop-backup-replication"

DBInstanceRequest = HandlerRequest[DBInstanceModel]


def _role_key(role: DBInstanceRole) -> str:
    return f"{role.role_arn}:{role.feature_name or ''}"


def validate_backup_replication(model: DBInstanceModel, source_region: str | None) -> None:
    """Reject backup replication settings that can never succeed.

    Raises:
        RequestValidationError: On a same-region destination, or replication
            settings without a destination region.
    """
    region = model.automatic_backup_replication_region
    if not region:
        if (
            model.automatic_backup_replication_kms_key_id
            or model.automatic_backup_replication_retention_period is not None
        ):
            raise RequestValidationError(
                "AutomaticBackupReplicationRegion is required when replication "
                "settings are specified"
            )
        return
    if source_region and region == source_region:
        raise RequestValidationError(
            "AutomaticBackupReplicationRegion must differ from the instance region"
        )


class DBInstanceHandler:
    """Base class for DB instance lifecycle handlers.

    Args:
        clients: RDS and EC2 clients for this invocation.
        config: Handler configuration.
    """

    operation: ClassVar[str] = ""

    def __init__(
        self,
        clients: ProxyClients,
        config: HandlerConfig = DB_INSTANCE_HANDLER_CONFIG_36H,
    ) -> None:
        self._clients = clients
        self._config = config

    @property
    def config(self) -> HandlerConfig:
        return self._config

    # -- entry point --------------------------------------------------------

    def handle(
        self, request: DBInstanceRequest, context: ProgressContext | None = None
    ) -> ProgressEvent:
        """Run one invocation and return what the host scheduler receives."""
        context = context if context is not None else ProgressContext()
        try:
            self.validate_request(request)
        except RequestValidationError as e:
            logger.error(
                "Request validation failed",
                extra={
                    "resource_type": RESOURCE_TYPE,
                    "operation": self.operation,
                    "error": str(e),
                },
            )
            return ProgressEvent.failed(
                request.desired_resource_state,
                None,
                ErrorCode.INVALID_REQUEST,
                f"{VALIDATE_STEP}: {e}",
            )

        logger.info(
            "Handling request",
            extra={
                "resource_type": RESOURCE_TYPE,
                "operation": self.operation,
                "resumed": bool(context.to_dict()),
            },
        )
        result = self.handle_request(request, context).terminal()
        logger.info(
            "Request handled",
            extra={
                "resource_type": RESOURCE_TYPE,
                "operation": self.operation,
                "status": result.status.value,
                "callback_delay_seconds": result.callback_delay_seconds,
                "error_code": result.error_code.value if result.error_code else None,
            },
        )
        return result

    def validate_request(self, request: DBInstanceRequest) -> None:
        if request.desired_resource_state is None:
            raise RequestValidationError("desiredResourceState is required")

    def handle_request(
        self, request: DBInstanceRequest, context: ProgressContext
    ) -> ProgressEvent:
        raise NotImplementedError

    # -- remote reads -------------------------------------------------------

    def describe_db_instance(self, model: DBInstanceModel) -> dict[str, Any]:
        """Fetch the raw DescribeDBInstances entry for model.

        Raises:
            ClientError: DBInstanceNotFound when the service returns no entry.
        """
        response = self._clients.rds.invoke(
            "DescribeDBInstances", describe_db_instances_request(model)
        )
        instances = response.get("DBInstances") or []
        if not instances:
            raise ClientError(
                {
                    "Error": {
                        "Code": DB_INSTANCE_NOT_FOUND_CODES[0],
                        "Message": f"DBInstance {model.db_instance_identifier} not found",
                    }
                },
                "DescribeDBInstances",
            )
        instance: dict[str, Any] = instances[0]
        return instance

    def describe_db_cluster(self, model: DBInstanceModel) -> dict[str, Any]:
        # SAFETY: only called for cluster members
        assert model.db_cluster_identifier is not None
        response = self._clients.rds.invoke(
            "DescribeDBClusters", describe_db_cluster_request(model.db_cluster_identifier)
        )
        clusters = response.get("DBClusters") or []
        if not clusters:
            raise ClientError(
                {
                    "Error": {
                        "Code": "DBClusterNotFoundFault",
                        "Message": f"DBCluster {model.db_cluster_identifier} not found",
                    }
                },
                "DescribeDBClusters",
            )
        cluster: dict[str, Any] = clusters[0]
        return cluster

    def api_version(self, progress: ProgressEvent) -> ApiVersion:
        """Negotiate the API surface once per operation."""
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        model: DBInstanceModel = progress.model
        return negotiate_api_version(
            progress.context,
            lambda: ApiVersion.V12 if model.db_security_groups else ApiVersion.DEFAULT,
        )

    def read(self, progress: ProgressEvent) -> ProgressEvent:
        """Read the instance back and finish with the observed model."""
        try:
            instance = self.describe_db_instance(progress.model)
        except Exception as e:
            return handle_exception(
                progress, e, DEFAULT_DB_INSTANCE_ERROR_RULE_SET, READ_STEP, self._config
            )
        return ProgressEvent.success(db_instance_from_sdk(instance))

    # -- reboot -------------------------------------------------------------

    def should_reboot(self, model: DBInstanceModel, include_cluster: bool = False) -> bool:
        """True when a parameter change waits for a reboot.

        A vanished instance never needs a reboot.
        """
        try:
            instance = self.describe_db_instance(model)
        except ClientError as e:
            if remote_error_code(e) in DB_INSTANCE_NOT_FOUND_CODES:
                return False
            raise
        if is_pending_reboot(instance, model.apply_immediately):
            return True
        if include_cluster and is_cluster_member(model):
            cluster = self.describe_db_cluster(model)
            # SAFETY: is_cluster_member guarantees an identifier
            assert model.db_instance_identifier is not None
            return is_cluster_pending_reboot(
                cluster, model.db_instance_identifier, model.apply_immediately
            )
        return False

    def reboot_await(self, progress: ProgressEvent) -> ProgressEvent:
        model: DBInstanceModel = progress.model
        return invoke_once(
            progress,
            REBOOT_STEP,
            lambda: self._clients.rds.invoke(
                "RebootDBInstance", reboot_db_instance_request(model)
            ),
            DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
            self._config,
            poll=lambda: self.describe_db_instance(model),
            predicate=stabilized_after_mutate(model.apply_immediately),
        )

    def reboot_step(self, progress: ProgressEvent, include_cluster: bool = False) -> ProgressEvent:
        """Guarded reboot. Once issued, re-entry goes straight to stabilization."""
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        context = progress.context

        def body() -> ProgressEvent:
            try:
                needed = was_invoked(context, REBOOT_STEP) or self.should_reboot(
                    progress.model, include_cluster
                )
            except Exception as e:
                return handle_exception(
                    progress, e, DEFAULT_DB_INSTANCE_ERROR_RULE_SET, REBOOT_STEP, self._config
                )
            if not needed:
                return progress
            return self.reboot_await(progress)

        return exec_once(progress, REBOOT_STEP, body)

    # -- associated roles ---------------------------------------------------

    def update_associated_roles(
        self,
        progress: ProgressEvent,
        previous_roles: Iterable[DBInstanceRole],
        desired_roles: Iterable[DBInstanceRole],
    ) -> ProgressEvent:
        """Reconcile role associations by set difference, removals first."""
        to_add, to_remove = diff_sets(previous_roles, desired_roles)
        if not to_add and not to_remove:
            return progress

        model: DBInstanceModel = progress.model
        rds = self._clients.rds

        for role in sorted(to_remove, key=_role_key):
            progress = invoke_once(
                progress,
                f"remove-role:{_role_key(role)}",
                lambda role=role: rds.invoke(
                    "RemoveRoleFromDBInstance", remove_role_request(model, role)
                ),
                UPDATE_ASSOCIATED_ROLES_ERROR_RULE_SET,
                self._config,
            )
            if not progress.is_success:
                return progress

        for role in sorted(to_add, key=_role_key):
            progress = invoke_once(
                progress,
                f"add-role:{_role_key(role)}",
                lambda role=role: rds.invoke("AddRoleToDBInstance", add_role_request(model, role)),
                UPDATE_ASSOCIATED_ROLES_ERROR_RULE_SET,
                self._config,
            )
            if not progress.is_success:
                return progress

        return await_stable(
            progress,
            lambda: self.describe_db_instance(model),
            roles_settled(to_add, to_remove),
            ROLES_STEP,
            UPDATE_ASSOCIATED_ROLES_ERROR_RULE_SET,
            self._config,
        )

    def roles_step(
        self,
        progress: ProgressEvent,
        previous_roles: Iterable[DBInstanceRole],
        desired_roles: Iterable[DBInstanceRole],
    ) -> ProgressEvent:
        return exec_once(
            progress,
            ROLES_STEP,
            lambda: self.update_associated_roles(progress, previous_roles, desired_roles),
        )

    # -- automatic backup replication --------------------------------------

    def memoize_backup_replication_prerequisites(self, progress: ProgressEvent) -> ProgressEvent:
        """Capture the instance ARN and KMS key id on first entry."""
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        context = progress.context

        def body() -> ProgressEvent:
            try:
                instance = self.describe_db_instance(progress.model)
            except Exception as e:
                return handle_exception(
                    progress,
                    e,
                    AUTOMATIC_BACKUP_REPLICATION_ERROR_RULE_SET,
                    BACKUP_REPLICATION_MEMO_STEP,
                    self._config,
                )
            context.put_once(DB_INSTANCE_ARN, instance.get("DBInstanceArn"))
            context.put_once(KMS_KEY_ID, instance.get("KmsKeyId"))
            return progress

        return exec_once(
            progress,
            BACKUP_REPLICATION_MEMO_STEP,
            body,
            is_done=lambda c: bool(c.get(DB_INSTANCE_ARN)),
            mark_done=lambda c: None,
        )

    def _source_arn(self, progress: ProgressEvent) -> str:
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        return str(progress.context.get(DB_INSTANCE_ARN, ""))

    def stop_backup_replication(self, progress: ProgressEvent, region: str) -> ProgressEvent:
        """Stop replication into region, then wait until the source reports it gone."""
        model: DBInstanceModel = progress.model
        source_arn = self._source_arn(progress)
        destination = self._clients.rds_in_region(region)

        def body() -> ProgressEvent:
            return invoke_once(
                progress,
                STOP_BACKUP_REPLICATION_STEP,
                lambda: destination.invoke(
                    "StopDBInstanceAutomatedBackupsReplication",
                    stop_backup_replication_request(source_arn),
                ),
                AUTOMATIC_BACKUP_REPLICATION_ERROR_RULE_SET,
                self._config,
                poll=lambda: self.describe_db_instance(model),
                predicate=lambda instance: not replicates_to(instance, region),
            )

        return exec_once(progress, STOP_BACKUP_REPLICATION_STEP, body)

    def start_backup_replication(self, progress: ProgressEvent, region: str) -> ProgressEvent:
        """Start replication into region, then wait until the source reports it."""
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        model: DBInstanceModel = progress.model
        source_arn = self._source_arn(progress)
        source_kms_key_id = progress.context.get(KMS_KEY_ID)
        destination = self._clients.rds_in_region(region)

        def body() -> ProgressEvent:
            if source_kms_key_id and not model.automatic_backup_replication_kms_key_id:
                return handle_exception(
                    progress,
                    InvalidRequestError(
                        "AutomaticBackupReplicationKmsKeyId is required to replicate "
                        "backups of an encrypted instance"
                    ),
                    AUTOMATIC_BACKUP_REPLICATION_ERROR_RULE_SET,
                    START_BACKUP_REPLICATION_STEP,
                    self._config,
                )
            return invoke_once(
                progress,
                START_BACKUP_REPLICATION_STEP,
                lambda: destination.invoke(
                    "StartDBInstanceAutomatedBackupsReplication",
                    start_backup_replication_request(
                        source_arn,
                        model.automatic_backup_replication_retention_period,
                        model.automatic_backup_replication_kms_key_id,
                    ),
                ),
                AUTOMATIC_BACKUP_REPLICATION_ERROR_RULE_SET,
                self._config,
                poll=lambda: self.describe_db_instance(model),
                predicate=lambda instance: replicates_to(instance, region),
            )

        return exec_once(progress, START_BACKUP_REPLICATION_STEP, body)

    # -- tags ---------------------------------------------------------------

    def update_tags(
        self, progress: ProgressEvent, previous: TagSet, desired: TagSet
    ) -> ProgressEvent:
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        context = progress.context
        model: DBInstanceModel = progress.model

        def resource_arn() -> str:
            arn = context.get(DB_INSTANCE_ARN)
            if not arn:
                arn = self.describe_db_instance(model).get("DBInstanceArn")
                context.put(DB_INSTANCE_ARN, arn)
            return str(arn)

        return update_tags(
            progress,
            self._clients.rds,
            resource_arn,
            previous,
            desired,
            TAGGING_ERROR_RULE_SET,
            self._config,
        )


def desired_tag_set(request: DBInstanceRequest) -> TagSet:
    model = request.desired_resource_state
    return TagSet(
        system_tags=request.system_tags,
        stack_tags=request.desired_resource_tags,
        resource_tags=tags_to_dict(model.tags if model else None),
    )


def previous_tag_set(request: DBInstanceRequest) -> TagSet:
    model = request.previous_resource_state
    return TagSet(
        system_tags=request.previous_system_tags,
        stack_tags=request.previous_resource_tags,
        resource_tags=tags_to_dict(model.tags if model else None),
    )
