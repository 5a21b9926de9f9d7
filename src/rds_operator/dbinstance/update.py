"""Update handler for DB instances.

The update runs as an ordered chain of steps. Order matters: later steps
assume earlier ones already mutated remote or local state.

1. Reject structurally immutable changes (no remote mutation)
2. Divert into the drift sub-flow when the caller asks for it
3. Resolve implicit fields (rollback parameter group, default VPC group)
4. Clear the storage autoscaling ceiling when it was removed
5. Increase storage of a storage-full instance (guarded)
6. Promote a read replica (guarded)
7. Modify the instance, then check the event stream (guarded)
8. Reboot for pending parameter changes (guarded)
9. Reconcile role associations (guarded)
10. Start or stop cross-region backup replication (guarded)
11. Reconcile tags
12. Read back and report drift

A guarded step records a completion marker in the progress context, so a
re-invocation with the returned context resumes at the first unfinished
step without repeating any mutation.
"""

from __future__ import annotations

import logging

from ..context import ProgressContext
from ..drift import report_resource_drift
from ..errors import (
    ErrorCode,
    InvalidRequestError,
    RequestValidationError,
    handle_exception,
)
from ..failure_events import check_failed_events
from ..guard import exec_once, invoke_once
from ..models import DBInstanceModel, tags_from_dict
from ..progress import ProgressEvent, Step, chain
from ..stabilize import await_stable
from ..tagging import TagSet
from ..translator import (
    describe_db_engine_versions_request,
    describe_db_parameter_groups_request,
    describe_default_security_group_request,
    modify_db_instance_request,
    modify_db_instance_request_v12,
    promote_read_replica_request,
    update_allocated_storage_request,
)
from ..versioning import ApiVersion, VersionedDispatcher
from .base import (
    DB_INSTANCE_SOURCE_TYPE,
    RESOURCE_TYPE,
    DBInstanceHandler,
    DBInstanceRequest,
    desired_tag_set,
    previous_tag_set,
    validate_backup_replication,
)
from .immutability import immutable_changes
from .predicates import (
    db_cluster_parameter_group_in_sync,
    is_cluster_member,
    is_db_parameter_group_in_sync,
    is_failure_event,
    is_option_group_in_sync,
    is_rds_custom_oracle,
    is_read_replica_promotion,
    is_storage_full,
    should_start_backup_replication,
    should_stop_backup_replication,
    stabilized_after_mutate,
)
from .rules import DEFAULT_DB_INSTANCE_ERROR_RULE_SET, MODIFY_DB_INSTANCE_ERROR_RULE_SET

logger = logging.getLogger(__name__)

# Checkpoint opened just before the modify call; bounds the event search
RESOURCE_UPDATED_AT = "resource-updated-at"

# Scratch flag: storage-full handling started, keep handling it on re-entry
ALLOCATING_STORAGE = "allocating-storage"

ENGINE_LIFECYCLE_STEP = "engine-lifecycle-support"
PARAMETER_GROUP_STEP = "resolve-parameter-group"
DEFAULT_VPC_STEP = "resolve-default-vpc-security-group"
MAX_ALLOCATED_STORAGE_STEP = "unset-max-allocated-storage"
ALLOCATE_STORAGE_STEP = "allocate-storage"
INCREASE_STORAGE_CALL = "increase-allocated-storage"
PROMOTE_STEP = "promote-read-replica"
MODIFY_STEP = "modify-db-instance"
DESCRIBE_STEP = "describe-db-instance"
IMMUTABILITY_STEP = "check-immutability"

# A modify request carrying only these keys would change nothing
NO_OP_MODIFY_KEYS = frozenset({"DBInstanceIdentifier", "ApplyImmediately"})


class UpdateHandler(DBInstanceHandler):
    """Reconciles an existing DB instance towards the desired model."""

    operation = "UPDATE"

    def validate_request(self, request: DBInstanceRequest) -> None:
        super().validate_request(request)
        # SAFETY: checked by super().validate_request
        assert request.desired_resource_state is not None
        if request.previous_resource_state is None:
            raise RequestValidationError("previousResourceState is required for updates")
        if not request.desired_resource_state.db_instance_identifier:
            raise RequestValidationError("DBInstanceIdentifier is required")
        validate_backup_replication(request.desired_resource_state, request.region)

    def handle_request(
        self, request: DBInstanceRequest, context: ProgressContext
    ) -> ProgressEvent:
        # SAFETY: checked by validate_request
        assert request.desired_resource_state is not None
        assert request.previous_resource_state is not None
        desired = request.desired_resource_state
        previous = request.previous_resource_state

        instance = None
        if not previous.engine:
            try:
                instance = self.describe_db_instance(previous)
            except Exception as e:
                return handle_exception(
                    ProgressEvent.proceed(previous, context),
                    e,
                    DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
                    DESCRIBE_STEP,
                    self._config,
                )

        immutable = immutable_changes(previous, desired, instance)
        if immutable:
            return ProgressEvent.failed(
                desired,
                context,
                ErrorCode.NOT_UPDATABLE,
                f"{IMMUTABILITY_STEP}: Resource is immutable: {', '.join(immutable)}",
            )

        if request.driftable:
            return self.handle_resource_drift(request, context)

        previous_tags = previous_tag_set(request)
        desired_tags = desired_tag_set(request)

        return chain(
            ProgressEvent.proceed(desired, context),
            [
                lambda p: self.check_engine_lifecycle_support(p, request),
                lambda p: self.resolve_parameter_group(p, request),
                lambda p: self.resolve_default_vpc_security_group(p),
                lambda p: self.unset_max_allocated_storage(p, request),
                lambda p: self.allocate_storage_step(p, request),
                lambda p: self.promote_read_replica_step(p, request),
                lambda p: self.modify_step(p, request),
                lambda p: self.reboot_step(p),
                lambda p: self.roles_step(p, previous.associated_roles, desired.associated_roles),
                lambda p: self.backup_replication_steps(p, request),
                lambda p: self.update_tags(p, previous_tags, desired_tags),
                lambda p: self.read_back(p, desired_tags),
            ],
        )

    # -- drift sub-flow -----------------------------------------------------

    def handle_resource_drift(
        self, request: DBInstanceRequest, context: ProgressContext
    ) -> ProgressEvent:
        """Settle pending parameter and option group changes, then read back.

        Never issues a primary modification; a reboot is the only mutation.
        """
        model = request.desired_resource_state
        # SAFETY: checked by validate_request
        assert model is not None

        def await_cluster_parameter_group(progress: ProgressEvent) -> ProgressEvent:
            if not is_cluster_member(model):
                return progress
            # SAFETY: validate_request requires an identifier
            assert model.db_instance_identifier is not None
            return await_stable(
                progress,
                lambda: self.describe_db_cluster(model),
                db_cluster_parameter_group_in_sync(model.db_instance_identifier),
                "db-cluster-parameter-group-in-sync",
                DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
                self._config,
            )

        return chain(
            ProgressEvent.proceed(model, context),
            [
                lambda p: self.reboot_step(p, include_cluster=True),
                lambda p: await_stable(
                    p,
                    lambda: self.describe_db_instance(model),
                    is_db_parameter_group_in_sync,
                    "db-parameter-group-in-sync",
                    DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
                    self._config,
                ),
                lambda p: await_stable(
                    p,
                    lambda: self.describe_db_instance(model),
                    is_option_group_in_sync,
                    "option-group-in-sync",
                    DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
                    self._config,
                ),
                await_cluster_parameter_group,
                self.read,
            ],
        )

    # -- implicit field resolution ------------------------------------------

    def check_engine_lifecycle_support(
        self, progress: ProgressEvent, request: DBInstanceRequest
    ) -> ProgressEvent:
        # SAFETY: checked by validate_request
        assert request.previous_resource_state is not None
        desired: DBInstanceModel = progress.model
        previous = request.previous_resource_state
        if desired.engine_lifecycle_support == previous.engine_lifecycle_support:
            return progress
        if request.rollback:
            return progress
        return handle_exception(
            progress,
            InvalidRequestError("EngineLifecycleSupport cannot be modified."),
            MODIFY_DB_INSTANCE_ERROR_RULE_SET,
            ENGINE_LIFECYCLE_STEP,
            self._config,
        )

    def resolve_parameter_group(
        self, progress: ProgressEvent, request: DBInstanceRequest
    ) -> ProgressEvent:
        """On rollback, keep the parameter group only if it fits the engine version.

        Applies when both the group name and the engine version changed.
        """
        # SAFETY: checked by validate_request
        assert request.previous_resource_state is not None
        desired: DBInstanceModel = progress.model
        previous = request.previous_resource_state
        if not (
            request.rollback
            and desired.db_parameter_group_name != previous.db_parameter_group_name
            and desired.engine_version != previous.engine_version
            and desired.db_parameter_group_name
        ):
            return progress

        rds = self._clients.rds
        try:
            groups = rds.invoke(
                "DescribeDBParameterGroups",
                describe_db_parameter_groups_request(desired.db_parameter_group_name),
            ).get("DBParameterGroups") or []
            if not groups:
                return progress
            versions = rds.invoke(
                "DescribeDBEngineVersions",
                describe_db_engine_versions_request(
                    groups[0]["DBParameterGroupFamily"], desired.engine, desired.engine_version
                ),
            ).get("DBEngineVersions") or []
        except Exception as e:
            return handle_exception(
                progress, e, DEFAULT_DB_INSTANCE_ERROR_RULE_SET, PARAMETER_GROUP_STEP, self._config
            )

        if not versions:
            logger.info(
                "Parameter group does not match the rolled back engine version, dropping it",
                extra={"db_parameter_group_name": desired.db_parameter_group_name},
            )
            desired.db_parameter_group_name = None
        return progress

    def resolve_default_vpc_security_group(self, progress: ProgressEvent) -> ProgressEvent:
        """Fill in the VPC's default security group when none is specified.

        Cluster members inherit their groups from the cluster, and RDS Custom
        for Oracle manages its own.
        """
        desired: DBInstanceModel = progress.model
        if desired.vpc_security_groups or is_cluster_member(desired):
            return progress
        if is_rds_custom_oracle(desired):
            return progress

        try:
            instance = self.describe_db_instance(desired)
            vpc_id = (instance.get("DBSubnetGroup") or {}).get("VpcId")
            if not vpc_id:
                return progress
            groups = self._clients.ec2.invoke(
                "DescribeSecurityGroups", describe_default_security_group_request(vpc_id)
            ).get("SecurityGroups") or []
        except Exception as e:
            return handle_exception(
                progress, e, DEFAULT_DB_INSTANCE_ERROR_RULE_SET, DEFAULT_VPC_STEP, self._config
            )

        if groups and groups[0].get("GroupId"):
            desired.vpc_security_groups = [groups[0]["GroupId"]]
        return progress

    def unset_max_allocated_storage(
        self, progress: ProgressEvent, request: DBInstanceRequest
    ) -> ProgressEvent:
        """Disable storage autoscaling by echoing the current size as the ceiling.

        The service has no way to clear the ceiling other than setting it to
        the allocated storage.
        """
        desired: DBInstanceModel = progress.model
        previous = request.previous_resource_state
        if previous is None or previous.max_allocated_storage is None:
            return progress
        if desired.max_allocated_storage is not None:
            return progress

        try:
            instance = self.describe_db_instance(desired)
        except Exception as e:
            return handle_exception(
                progress,
                e,
                MODIFY_DB_INSTANCE_ERROR_RULE_SET,
                MAX_ALLOCATED_STORAGE_STEP,
                self._config,
            )
        desired.max_allocated_storage = instance.get("AllocatedStorage")
        return progress

    # -- guarded mutations --------------------------------------------------

    def allocate_storage_step(
        self, progress: ProgressEvent, request: DBInstanceRequest
    ) -> ProgressEvent:
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        context = progress.context

        def is_storage_increase() -> bool:
            previous = request.previous_resource_state
            if request.rollback or previous is None:
                return False
            desired: DBInstanceModel = progress.model
            return (desired.allocated_storage or 0) > (previous.allocated_storage or 0)

        def should_allocate_storage() -> bool:
            if context.get(ALLOCATING_STORAGE):
                return True
            return is_storage_full(self.describe_db_instance(progress.model))

        def body() -> ProgressEvent:
            try:
                if not (should_allocate_storage() and is_storage_increase()):
                    return progress
            except Exception as e:
                return handle_exception(
                    progress,
                    e,
                    MODIFY_DB_INSTANCE_ERROR_RULE_SET,
                    ALLOCATE_STORAGE_STEP,
                    self._config,
                )
            return self.allocate_storage(progress)

        return exec_once(progress, ALLOCATE_STORAGE_STEP, body)

    def allocate_storage(self, progress: ProgressEvent) -> ProgressEvent:
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        progress.context.put(ALLOCATING_STORAGE, True)
        model: DBInstanceModel = progress.model
        return invoke_once(
            progress,
            INCREASE_STORAGE_CALL,
            lambda: self._clients.rds.invoke(
                "ModifyDBInstance", update_allocated_storage_request(model)
            ),
            DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
            self._config,
            poll=lambda: self.describe_db_instance(model),
            predicate=stabilized_after_mutate(model.apply_immediately),
        )

    def promote_read_replica_step(
        self, progress: ProgressEvent, request: DBInstanceRequest
    ) -> ProgressEvent:
        model: DBInstanceModel = progress.model

        def body() -> ProgressEvent:
            if not is_read_replica_promotion(request.previous_resource_state, model):
                return progress
            return invoke_once(
                progress,
                PROMOTE_STEP,
                lambda: self._clients.rds.invoke(
                    "PromoteReadReplica", promote_read_replica_request(model)
                ),
                DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
                self._config,
                poll=lambda: self.describe_db_instance(model),
                predicate=stabilized_after_mutate(model.apply_immediately),
            )

        return exec_once(progress, PROMOTE_STEP, body)

    def modify_step(self, progress: ProgressEvent, request: DBInstanceRequest) -> ProgressEvent:
        """Issue the version-dispatched modify, then consult the event stream.

        The event check only runs once the modification has stabilized; it
        searches from the checkpoint recorded before the call was issued.
        """
        # SAFETY: pipeline steps always run with a live context
        assert progress.context is not None
        context = progress.context
        model: DBInstanceModel = progress.model
        dispatcher = VersionedDispatcher(
            {
                ApiVersion.V12: lambda p: self.modify_v12(p, request),
                ApiVersion.DEFAULT: lambda p: self.modify(p, request),
            }
        )

        def check_events(p: ProgressEvent) -> ProgressEvent:
            if not self._config.probing_enabled:
                return p
            # SAFETY: validate_request requires an identifier
            assert model.db_instance_identifier is not None
            return check_failed_events(
                p,
                self._clients.rds,
                model.db_instance_identifier,
                DB_INSTANCE_SOURCE_TYPE,
                context.get_timestamp(RESOURCE_UPDATED_AT),
                is_failure_event,
                MODIFY_DB_INSTANCE_ERROR_RULE_SET,
                self._config,
                MODIFY_STEP,
            )

        def body() -> ProgressEvent:
            context.timestamp_once(RESOURCE_UPDATED_AT)
            return dispatcher.dispatch(self.api_version(progress), progress).then(check_events)

        return exec_once(progress, MODIFY_STEP, body)

    def modify(self, progress: ProgressEvent, request: DBInstanceRequest) -> ProgressEvent:
        model: DBInstanceModel = progress.model

        def call() -> None:
            instance = self.describe_db_instance(model)
            modify_request = modify_db_instance_request(
                request.previous_resource_state, model, instance, request.rollback
            )
            if set(modify_request) <= NO_OP_MODIFY_KEYS:
                logger.info(
                    "Nothing to modify",
                    extra={"db_instance_identifier": model.db_instance_identifier},
                )
                return
            self._clients.rds.invoke("ModifyDBInstance", modify_request)

        return invoke_once(
            progress,
            MODIFY_STEP,
            call,
            MODIFY_DB_INSTANCE_ERROR_RULE_SET,
            self._config,
            poll=lambda: self.describe_db_instance(model),
            predicate=stabilized_after_mutate(model.apply_immediately),
        )

    def modify_v12(self, progress: ProgressEvent, request: DBInstanceRequest) -> ProgressEvent:
        model: DBInstanceModel = progress.model
        return invoke_once(
            progress,
            MODIFY_STEP,
            lambda: self._clients.rds.invoke(
                "ModifyDBInstance",
                modify_db_instance_request_v12(
                    request.previous_resource_state, model, request.rollback
                ),
            ),
            MODIFY_DB_INSTANCE_ERROR_RULE_SET,
            self._config,
            poll=lambda: self.describe_db_instance(model),
            predicate=stabilized_after_mutate(model.apply_immediately),
        )

    def backup_replication_steps(
        self, progress: ProgressEvent, request: DBInstanceRequest
    ) -> ProgressEvent:
        # SAFETY: checked by validate_request
        assert request.previous_resource_state is not None
        desired: DBInstanceModel = progress.model
        previous = request.previous_resource_state
        stop = should_stop_backup_replication(previous, desired)
        start = should_start_backup_replication(previous, desired)
        if not (stop or start):
            return progress

        steps: list[Step] = [self.memoize_backup_replication_prerequisites]
        if stop and previous.automatic_backup_replication_region:
            old_region = previous.automatic_backup_replication_region
            steps.append(lambda p: self.stop_backup_replication(p, old_region))
        if start and desired.automatic_backup_replication_region:
            new_region = desired.automatic_backup_replication_region
            steps.append(lambda p: self.start_backup_replication(p, new_region))
        return chain(progress, steps)

    # -- read-back ----------------------------------------------------------

    def read_back(self, progress: ProgressEvent, desired_tags: TagSet) -> ProgressEvent:
        """Read the instance, report drift, and finish with the observed model."""
        desired: DBInstanceModel = progress.model
        tags = tags_from_dict(desired_tags.merged())
        desired.tags = tags

        result = self.read(progress)
        if not result.is_success:
            return result

        report_resource_drift(desired, result.model, RESOURCE_TYPE, self.operation)
        result.model.tags = tags
        return result
