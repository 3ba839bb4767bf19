from enum import Enum


class _OpenEnum(str, Enum):
    """String enum whose unrecognized stored values map to an UNKNOWN member."""

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN  # type: ignore[attr-defined]


class RuleType(str, Enum):
    ORG_LIST = "org_list"
    PERCENTAGE = "percentage"
    GLOBAL = "global"


class DecisionSource(str, Enum):
    OVERRIDE = "override"
    RULE = "rule"
    DEFAULT = "default"


class SessionAction(_OpenEnum):
    ALLOW = "allow"
    FLAG = "flag"
    BLOCK = "block"
    UNKNOWN = "unknown"


class MismatchType(_OpenEnum):
    IP_MISMATCH = "ip_mismatch"
    USER_AGENT_MISMATCH = "user_agent_mismatch"
    BOTH = "both"
    UNKNOWN = "unknown"


class AuditAction(_OpenEnum):
    FLAG_CREATED = "flag_created"
    FLAG_UPDATED = "flag_updated"
    FLAG_DELETED = "flag_deleted"
    RULE_UPSERTED = "rule_upserted"
    RULE_DELETED = "rule_deleted"
    OVERRIDE_SET = "override_set"
    OVERRIDE_CLEARED = "override_cleared"
    UNKNOWN = "unknown"
