"""Error rule sets for DB instance steps.

Each step picks the narrowest rule set that describes it. Rule sets extend
the DB instance default, which in turn extends the shared default in
``rds_operator.errors``.
"""

from __future__ import annotations

from ..errors import (
    DEFAULT_ERROR_RULE_SET,
    ErrorCode,
    ErrorRuleSet,
    ErrorStatus,
)

DB_INSTANCE_NOT_FOUND_CODES = ("DBInstanceNotFound", "DBInstanceNotFoundFault")

DEFAULT_DB_INSTANCE_ERROR_RULE_SET = (
    ErrorRuleSet.extending(DEFAULT_ERROR_RULE_SET, name="db-instance")
    .with_error_codes(ErrorStatus.fail(ErrorCode.NOT_FOUND), *DB_INSTANCE_NOT_FOUND_CODES)
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.ALREADY_EXISTS),
        "DBInstanceAlreadyExists",
        "DBInstanceAlreadyExistsFault",
    )
    .with_error_codes(
        ErrorStatus.retry(ErrorCode.CONFLICT),
        "InvalidDBInstanceState",
        "InvalidDBInstanceStateFault",
        "InvalidDBClusterStateFault",
        "InvalidDBSecurityGroupState",
    )
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.INVALID_REQUEST),
        "DBParameterGroupNotFound",
        "DBSecurityGroupNotFound",
        "DBSubnetGroupNotFoundFault",
        "DBClusterNotFoundFault",
        "OptionGroupNotFoundFault",
        "KMSKeyNotAccessibleFault",
        "InsufficientDBInstanceCapacity",
        "InstanceQuotaExceeded",
        "StorageQuotaExceeded",
        "StorageTypeNotSupported",
        "InvalidVPCNetworkStateFault",
        "DBUpgradeDependencyFailure",
        "CertificateNotFound",
        "NetworkTypeNotSupported",
    )
)

MODIFY_DB_INSTANCE_ERROR_RULE_SET = (
    ErrorRuleSet.extending(DEFAULT_DB_INSTANCE_ERROR_RULE_SET, name="modify-db-instance")
    .with_message_containing(
        ErrorStatus.ignore(), "InvalidParameterCombination", "No modifications were requested"
    )
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.INVALID_REQUEST),
        "InvalidDBSecurityGroupState",
        "ProvisionedIopsNotAvailableInAZFault",
    )
)

UPDATE_ASSOCIATED_ROLES_ERROR_RULE_SET = (
    ErrorRuleSet.extending(DEFAULT_DB_INSTANCE_ERROR_RULE_SET, name="associated-roles")
    .with_error_codes(
        ErrorStatus.ignore(),
        "DBInstanceRoleAlreadyExists",
        "DBInstanceRoleNotFound",
    )
    .with_error_codes(ErrorStatus.fail(ErrorCode.INVALID_REQUEST), "DBInstanceRoleQuotaExceeded")
)

AUTOMATIC_BACKUP_REPLICATION_ERROR_RULE_SET = (
    ErrorRuleSet.extending(DEFAULT_DB_INSTANCE_ERROR_RULE_SET, name="backup-replication")
    .with_error_codes(
        ErrorStatus.ignore(),
        "DBInstanceAutomatedBackupNotFound",
    )
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.ALREADY_EXISTS),
        "DBInstanceAutomatedBackupAlreadyExists",
    )
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.INVALID_REQUEST),
        "DBInstanceAutomatedBackupQuotaExceeded",
        "StorageTypeNotSupported",
    )
)

DELETE_DB_INSTANCE_ERROR_RULE_SET = (
    ErrorRuleSet.extending(DEFAULT_DB_INSTANCE_ERROR_RULE_SET, name="delete-db-instance")
    .with_message_containing(
        ErrorStatus.ignore(), "InvalidDBInstanceState", "is already being deleted"
    )
    .with_error_codes(
        ErrorStatus.fail(ErrorCode.INVALID_REQUEST),
        "DBSnapshotAlreadyExists",
        "SnapshotQuotaExceeded",
    )
)

TAGGING_ERROR_RULE_SET = ErrorRuleSet.extending(
    DEFAULT_DB_INSTANCE_ERROR_RULE_SET, name="db-instance-tags"
)
