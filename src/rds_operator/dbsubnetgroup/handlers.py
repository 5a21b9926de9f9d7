"""Lifecycle handlers for DB subnet groups.

Subnet groups converge quickly, but follow the same pipeline conventions as
DB instances: guarded mutations, stabilization through the host scheduler,
and a terminal read-back.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, ClassVar

from botocore.exceptions import ClientError

from ..client import ProxyClients
from ..config import DEFAULT_HANDLER_CONFIG, HandlerConfig
from ..context import ProgressContext
from ..drift import report_resource_drift
from ..errors import (
    DEFAULT_ERROR_RULE_SET,
    ErrorCode,
    ErrorRuleSet,
    ErrorStatus,
    RequestValidationError,
    handle_exception,
)
from ..guard import exec_once, invoke_once
from ..models import DBSubnetGroupModel, HandlerRequest, tags_from_dict, tags_to_dict
from ..progress import OperationStatus, ProgressEvent, chain
from ..tagging import TagSet, update_tags
from ..translator import (
    create_db_subnet_group_request,
    db_subnet_group_from_sdk,
    delete_db_subnet_group_request,
    describe_db_subnet_groups_request,
    list_db_subnet_groups_request,
    modify_db_subnet_group_request,
)

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "AWS::RDS::DBSubnetGroup"

SUBNET_GROUP_STATUS_COMPLETE = "Complete"
DB_SUBNET_GROUP_NOT_FOUND_CODES = ("DBSubnetGroupNotFoundFault", "DBSubnetGroupNotFound")

# Scratch keys
GENERATED_NAME = "db-subnet-group-name"
DB_SUBNET_GROUP_ARN = "db-subnet-group-arn"

VALIDATE_STEP = "validate-request"
CREATE_STEP = "create-db-subnet-group"
MODIFY_STEP = "modify-db-subnet-group"
DELETE_STEP = "delete-db-subnet-group"
READ_STEP = "describe-db-subnet-group"
LIST_STEP = "list-db-subnet-groups"

DEFAULT_DB_SUBNET_GROUP_ERROR_RULE_SET = (
    ErrorRuleSet.extending(DEFAULT_ERROR_RULE_SET, name="db-subnet-group")
    .with_error_codes(ErrorStatus.fail(ErrorCode.NOT_FOUND), *DB_SUBNET_GROUP_NOT_FOUND_CODES)
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.ALREADY_EXISTS),
        "DBSubnetGroupAlreadyExists",
        "DBSubnetGroupAlreadyExistsFault",
    )
    .with_error_codes(
        ErrorStatus.retry(ErrorCode.CONFLICT),
        "InvalidDBSubnetGroupStateFault",
        "InvalidDBSubnetGroupState",
    )
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.INVALID_REQUEST),
        "DBSubnetGroupQuotaExceeded",
        "DBSubnetQuotaExceededFault",
        "DBSubnetGroupDoesNotCoverEnoughAZs",
        "InvalidSubnet",
        "SubnetAlreadyInUse",
    )
)

DBSubnetGroupRequest = HandlerRequest[DBSubnetGroupModel]


def _not_found(name: str | None) -> ClientError:
    return ClientError(
        {
            "Error": {
                "Code": DB_SUBNET_GROUP_NOT_FOUND_CODES[0],
                "Message": f"DBSubnetGroup {name} not found",
            }
        },
        "DescribeDBSubnetGroups",
    )


class DBSubnetGroupHandler:
    """Base class for DB subnet group handlers."""

    operation: ClassVar[str] = ""

    def __init__(
        self, clients: ProxyClients, config: HandlerConfig = DEFAULT_HANDLER_CONFIG
    ) -> None:
        self._clients = clients
        self._config = config

    def handle(
        self, request: DBSubnetGroupRequest, context: ProgressContext | None = None
    ) -> ProgressEvent:
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
        return self.handle_request(request, context).terminal()

    def validate_request(self, request: DBSubnetGroupRequest) -> None:
        if request.desired_resource_state is None:
            raise RequestValidationError("desiredResourceState is required")

    def handle_request(
        self, request: DBSubnetGroupRequest, context: ProgressContext
    ) -> ProgressEvent:
        raise NotImplementedError

    def describe_db_subnet_group(self, model: DBSubnetGroupModel) -> dict[str, Any]:
        response = self._clients.rds.invoke(
            "DescribeDBSubnetGroups", describe_db_subnet_groups_request(model)
        )
        groups = response.get("DBSubnetGroups") or []
        if not groups:
            raise _not_found(model.db_subnet_group_name)
        group: dict[str, Any] = groups[0]
        return group

    def list_tags(self, arn: str | None) -> dict[str, str]:
        if not arn:
            return {}
        response = self._clients.rds.invoke("ListTagsForResource", {"ResourceName": arn})
        return {tag["Key"]: tag.get("Value", "") for tag in response.get("TagList") or []}

    def read(self, progress: ProgressEvent) -> ProgressEvent:
        try:
            group = self.describe_db_subnet_group(progress.model)
            tags = self.list_tags(group.get("DBSubnetGroupArn"))
        except Exception as e:
            return handle_exception(
                progress, e, DEFAULT_DB_SUBNET_GROUP_ERROR_RULE_SET, READ_STEP, self._config
            )
        return ProgressEvent.success(db_subnet_group_from_sdk(group, tags))

    def is_complete(self, group: dict[str, Any]) -> bool:
        return group.get("SubnetGroupStatus") == SUBNET_GROUP_STATUS_COMPLETE


def desired_tag_set(request: DBSubnetGroupRequest) -> TagSet:
    model = request.desired_resource_state
    return TagSet(
        system_tags=request.system_tags,
        stack_tags=request.desired_resource_tags,
        resource_tags=tags_to_dict(model.tags if model else None),
    )


def previous_tag_set(request: DBSubnetGroupRequest) -> TagSet:
    model = request.previous_resource_state
    return TagSet(
        system_tags=request.previous_system_tags,
        stack_tags=request.previous_resource_tags,
        resource_tags=tags_to_dict(model.tags if model else None),
    )


class CreateHandler(DBSubnetGroupHandler):
    operation = "CREATE"

    def validate_request(self, request: DBSubnetGroupRequest) -> None:
        super().validate_request(request)
        # SAFETY: checked by super().validate_request
        assert request.desired_resource_state is not None
        if not request.desired_resource_state.subnet_ids:
            raise RequestValidationError("SubnetIds must not be empty")

    def handle_request(
        self, request: DBSubnetGroupRequest, context: ProgressContext
    ) -> ProgressEvent:
        # SAFETY: checked by validate_request
        assert request.desired_resource_state is not None
        model = request.desired_resource_state
        if not model.db_subnet_group_name:
            generated = context.put_once(GENERATED_NAME, f"subnet-group-{secrets.token_hex(6)}")
            model.db_subnet_group_name = str(generated)
        tags = desired_tag_set(request).merged()

        def create(progress: ProgressEvent) -> ProgressEvent:
            return invoke_once(
                progress,
                CREATE_STEP,
                lambda: self._clients.rds.invoke(
                    "CreateDBSubnetGroup", create_db_subnet_group_request(model, tags)
                ),
                DEFAULT_DB_SUBNET_GROUP_ERROR_RULE_SET,
                self._config,
                poll=lambda: self.describe_db_subnet_group(model),
                predicate=self.is_complete,
            )

        return chain(
            ProgressEvent.proceed(model, context),
            [
                lambda p: exec_once(p, CREATE_STEP, lambda: create(p)),
                self.read,
            ],
        )


class ReadHandler(DBSubnetGroupHandler):
    operation = "READ"

    def handle_request(
        self, request: DBSubnetGroupRequest, context: ProgressContext
    ) -> ProgressEvent:
        return self.read(ProgressEvent.proceed(request.desired_resource_state, context))


class UpdateHandler(DBSubnetGroupHandler):
    operation = "UPDATE"

    def validate_request(self, request: DBSubnetGroupRequest) -> None:
        super().validate_request(request)
        # SAFETY: checked by super().validate_request
        assert request.desired_resource_state is not None
        if not request.desired_resource_state.db_subnet_group_name:
            raise RequestValidationError("DBSubnetGroupName is required")

    def handle_request(
        self, request: DBSubnetGroupRequest, context: ProgressContext
    ) -> ProgressEvent:
        # SAFETY: checked by validate_request
        assert request.desired_resource_state is not None
        model = request.desired_resource_state
        previous = request.previous_resource_state
        previous_tags = previous_tag_set(request)
        desired_tags = desired_tag_set(request)

        def modify(progress: ProgressEvent) -> ProgressEvent:
            if previous is not None and (
                sorted(previous.subnet_ids) == sorted(model.subnet_ids)
                and previous.db_subnet_group_description == model.db_subnet_group_description
            ):
                return progress
            return invoke_once(
                progress,
                MODIFY_STEP,
                lambda: self._clients.rds.invoke(
                    "ModifyDBSubnetGroup", modify_db_subnet_group_request(model)
                ),
                DEFAULT_DB_SUBNET_GROUP_ERROR_RULE_SET,
                self._config,
                poll=lambda: self.describe_db_subnet_group(model),
                predicate=self.is_complete,
            )

        def tags(progress: ProgressEvent) -> ProgressEvent:
            def resource_arn() -> str:
                arn = context.get(DB_SUBNET_GROUP_ARN)
                if not arn:
                    arn = self.describe_db_subnet_group(model).get("DBSubnetGroupArn")
                    context.put(DB_SUBNET_GROUP_ARN, arn)
                return str(arn)

            return update_tags(
                progress,
                self._clients.rds,
                resource_arn,
                previous_tags,
                desired_tags,
                DEFAULT_DB_SUBNET_GROUP_ERROR_RULE_SET,
                self._config,
            )

        def read_back(progress: ProgressEvent) -> ProgressEvent:
            result = self.read(progress)
            if result.is_success:
                model.tags = tags_from_dict(desired_tags.merged())
                report_resource_drift(model, result.model, RESOURCE_TYPE, self.operation)
            return result

        return chain(
            ProgressEvent.proceed(model, context),
            [
                lambda p: exec_once(p, MODIFY_STEP, lambda: modify(p)),
                tags,
                read_back,
            ],
        )


class DeleteHandler(DBSubnetGroupHandler):
    """Deletes a subnet group.

    NotFound from the delete call fails the operation; NotFound while
    polling afterwards completes it.
    """

    operation = "DELETE"

    def handle_request(
        self, request: DBSubnetGroupRequest, context: ProgressContext
    ) -> ProgressEvent:
        model = request.desired_resource_state
        # SAFETY: checked by validate_request
        assert model is not None
        progress = ProgressEvent.proceed(model, context)

        def delete() -> ProgressEvent:
            return invoke_once(
                progress,
                DELETE_STEP,
                lambda: self._clients.rds.invoke(
                    "DeleteDBSubnetGroup", delete_db_subnet_group_request(model)
                ),
                DEFAULT_DB_SUBNET_GROUP_ERROR_RULE_SET,
                self._config,
                poll=lambda: self.describe_db_subnet_group(model),
                predicate=lambda group: False,
                not_found_codes=DB_SUBNET_GROUP_NOT_FOUND_CODES,
            )

        result = exec_once(progress, DELETE_STEP, delete)
        if result.is_success:
            return ProgressEvent.success(None)
        return result


class ListHandler(DBSubnetGroupHandler):
    operation = "LIST"

    def validate_request(self, request: DBSubnetGroupRequest) -> None:
        pass

    def handle_request(
        self, request: DBSubnetGroupRequest, context: ProgressContext
    ) -> ProgressEvent:
        progress = ProgressEvent.proceed(request.desired_resource_state, context)
        try:
            response = self._clients.rds.invoke(
                "DescribeDBSubnetGroups", list_db_subnet_groups_request(request.next_token)
            )
        except Exception as e:
            return handle_exception(
                progress, e, DEFAULT_DB_SUBNET_GROUP_ERROR_RULE_SET, LIST_STEP, self._config
            )
        return ProgressEvent(
            status=OperationStatus.SUCCESS,
            resource_models=[
                db_subnet_group_from_sdk(group) for group in response.get("DBSubnetGroups") or []
            ],
            next_token=response.get("Marker"),
        )
