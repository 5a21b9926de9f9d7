"""Create, read, delete and list handlers for DB instances.

Update lives in its own module; its pipeline is long enough to read on
its own.
"""

from __future__ import annotations

import logging
import secrets

from ..context import ProgressContext
from ..errors import RequestValidationError, handle_exception
from ..guard import exec_once, invoke_once
from ..models import DBInstanceModel, tags_from_dict
from ..progress import OperationStatus, ProgressEvent, chain
from ..translator import (
    create_db_instance_read_replica_request,
    create_db_instance_request,
    db_instance_from_sdk,
    delete_db_instance_request,
    list_db_instances_request,
)
from .base import (
    DBInstanceHandler,
    DBInstanceRequest,
    desired_tag_set,
    validate_backup_replication,
)
from .predicates import (
    is_read_replica,
    should_start_backup_replication,
    stabilized_after_mutate,
)
from .rules import (
    DB_INSTANCE_NOT_FOUND_CODES,
    DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
    DELETE_DB_INSTANCE_ERROR_RULE_SET,
)

logger = logging.getLogger(__name__)

CREATE_STEP = "create-db-instance"
DELETE_STEP = "delete-db-instance"
LIST_STEP = "list-db-instances"

# Scratch key holding a generated identifier across invocations
GENERATED_IDENTIFIER = "db-instance-identifier"
MAX_IDENTIFIER_LENGTH = 63


def generate_identifier(context: ProgressContext, prefix: str = "db") -> str:
    """Return the identifier generated for this operation, creating it once."""
    stored = context.put_once(GENERATED_IDENTIFIER, f"{prefix}-{secrets.token_hex(8)}")
    return str(stored)[:MAX_IDENTIFIER_LENGTH]


class CreateHandler(DBInstanceHandler):
    """Creates a DB instance or read replica and waits for it to be available."""

    operation = "CREATE"

    def validate_request(self, request: DBInstanceRequest) -> None:
        super().validate_request(request)
        # SAFETY: checked by super().validate_request
        assert request.desired_resource_state is not None
        validate_backup_replication(request.desired_resource_state, request.region)

    def handle_request(
        self, request: DBInstanceRequest, context: ProgressContext
    ) -> ProgressEvent:
        # SAFETY: checked by validate_request
        assert request.desired_resource_state is not None
        model = request.desired_resource_state
        if not model.db_instance_identifier:
            model.db_instance_identifier = generate_identifier(context)

        tags = desired_tag_set(request).merged()

        result = chain(
            ProgressEvent.proceed(model, context),
            [
                lambda p: exec_once(p, CREATE_STEP, lambda: self.create(p, tags)),
                lambda p: self.reboot_step(p),
                lambda p: self.roles_step(p, [], model.associated_roles),
                lambda p: self.start_replication_if_requested(p),
                self.read,
            ],
        )
        if result.is_success and result.model is not None:
            result.model.tags = tags_from_dict(tags)
        return result

    def create(self, progress: ProgressEvent, tags: dict[str, str]) -> ProgressEvent:
        model: DBInstanceModel = progress.model
        if is_read_replica(model):
            operation = "CreateDBInstanceReadReplica"
            request = create_db_instance_read_replica_request(model, tags)
        else:
            operation = "CreateDBInstance"
            request = create_db_instance_request(model, tags)

        return invoke_once(
            progress,
            CREATE_STEP,
            lambda: self._clients.rds.invoke(operation, request),
            DEFAULT_DB_INSTANCE_ERROR_RULE_SET,
            self._config,
            poll=lambda: self.describe_db_instance(model),
            predicate=stabilized_after_mutate(model.apply_immediately),
        )

    def start_replication_if_requested(self, progress: ProgressEvent) -> ProgressEvent:
        model: DBInstanceModel = progress.model
        region = model.automatic_backup_replication_region
        if region is None or not should_start_backup_replication(None, model):
            return progress
        return self.memoize_backup_replication_prerequisites(progress).then(
            lambda p: self.start_backup_replication(p, region)
        )


class ReadHandler(DBInstanceHandler):
    """Describes a DB instance."""

    operation = "READ"

    def validate_request(self, request: DBInstanceRequest) -> None:
        super().validate_request(request)
        # SAFETY: checked by super().validate_request
        assert request.desired_resource_state is not None
        if not request.desired_resource_state.db_instance_identifier:
            raise RequestValidationError("DBInstanceIdentifier is required")

    def handle_request(
        self, request: DBInstanceRequest, context: ProgressContext
    ) -> ProgressEvent:
        return self.read(ProgressEvent.proceed(request.desired_resource_state, context))


class DeleteHandler(DBInstanceHandler):
    """Deletes a DB instance and waits until the service no longer reports it.

    A not-found from the delete call itself fails the operation; a not-found
    while polling afterwards means the deletion finished.
    """

    operation = "DELETE"

    def validate_request(self, request: DBInstanceRequest) -> None:
        super().validate_request(request)
        # SAFETY: checked by super().validate_request
        assert request.desired_resource_state is not None
        if not request.desired_resource_state.db_instance_identifier:
            raise RequestValidationError("DBInstanceIdentifier is required")

    def handle_request(
        self, request: DBInstanceRequest, context: ProgressContext
    ) -> ProgressEvent:
        model = request.desired_resource_state
        progress = ProgressEvent.proceed(model, context)
        result = exec_once(progress, DELETE_STEP, lambda: self.delete(progress))
        if result.is_success:
            return ProgressEvent.success(None)
        return result

    def delete(self, progress: ProgressEvent) -> ProgressEvent:
        model: DBInstanceModel = progress.model
        return invoke_once(
            progress,
            DELETE_STEP,
            lambda: self._clients.rds.invoke(
                "DeleteDBInstance", delete_db_instance_request(model)
            ),
            DELETE_DB_INSTANCE_ERROR_RULE_SET,
            self._config,
            poll=lambda: self.describe_db_instance(model),
            predicate=lambda instance: False,
            not_found_codes=DB_INSTANCE_NOT_FOUND_CODES,
        )


class ListHandler(DBInstanceHandler):
    """Lists one page of DB instances."""

    operation = "LIST"

    def validate_request(self, request: DBInstanceRequest) -> None:
        # Listing needs no model
        pass

    def handle_request(
        self, request: DBInstanceRequest, context: ProgressContext
    ) -> ProgressEvent:
        progress = ProgressEvent.proceed(request.desired_resource_state, context)
        try:
            response = self._clients.rds.invoke(
                "DescribeDBInstances", list_db_instances_request(request.next_token)
            )
        except Exception as e:
            return handle_exception(
                progress, e, DEFAULT_DB_INSTANCE_ERROR_RULE_SET, LIST_STEP, self._config
            )

        models = [db_instance_from_sdk(i) for i in response.get("DBInstances") or []]
        logger.debug("Listed DB instances", extra={"count": len(models)})
        return ProgressEvent(
            status=OperationStatus.SUCCESS,
            resource_models=models,
            next_token=response.get("Marker"),
        )
