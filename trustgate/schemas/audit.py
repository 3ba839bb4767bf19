"""Typed audit metadata.

Each audit action carries a closed payload model; rows written by a newer
release with an action this code does not know parse to UnknownAuditMetadata
instead of failing.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from trustgate.core.enums import AuditAction, MismatchType, SessionAction


class _Metadata(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class FlagCreatedMetadata(_Metadata):
    action: Literal["flag_created"] = "flag_created"
    key: str
    name: str
    enabled: bool


class FlagUpdatedMetadata(_Metadata):
    action: Literal["flag_updated"] = "flag_updated"
    key: str
    changed_fields: List[str] = Field(default_factory=list)
    enabled: bool


class FlagDeletedMetadata(_Metadata):
    action: Literal["flag_deleted"] = "flag_deleted"
    key: str
    rule_count: int = 0
    override_count: int = 0


class RuleUpsertedMetadata(_Metadata):
    action: Literal["rule_upserted"] = "rule_upserted"
    rule_id: UUID
    created: bool
    type: str
    percentage: int
    priority: int
    enabled: bool
    organization_count: int = 0


class RuleDeletedMetadata(_Metadata):
    action: Literal["rule_deleted"] = "rule_deleted"
    rule_id: UUID
    type: str


class OverrideSetMetadata(_Metadata):
    action: Literal["override_set"] = "override_set"
    enabled: bool
    reason: str
    expires_at: Optional[datetime] = None


class OverrideClearedMetadata(_Metadata):
    action: Literal["override_cleared"] = "override_cleared"
    previous_enabled: bool
    previous_reason: Optional[str] = None
    previous_expires_at: Optional[datetime] = None


class UnknownAuditMetadata(_Metadata):
    action: str
    raw: Dict[str, Any] = Field(default_factory=dict)


AuditMetadata = Union[
    FlagCreatedMetadata,
    FlagUpdatedMetadata,
    FlagDeletedMetadata,
    RuleUpsertedMetadata,
    RuleDeletedMetadata,
    OverrideSetMetadata,
    OverrideClearedMetadata,
    UnknownAuditMetadata,
]

_METADATA_BY_ACTION = {
    AuditAction.FLAG_CREATED: FlagCreatedMetadata,
    AuditAction.FLAG_UPDATED: FlagUpdatedMetadata,
    AuditAction.FLAG_DELETED: FlagDeletedMetadata,
    AuditAction.RULE_UPSERTED: RuleUpsertedMetadata,
    AuditAction.RULE_DELETED: RuleDeletedMetadata,
    AuditAction.OVERRIDE_SET: OverrideSetMetadata,
    AuditAction.OVERRIDE_CLEARED: OverrideClearedMetadata,
}


def parse_audit_metadata(action: str, raw: Optional[Dict[str, Any]]) -> AuditMetadata:
    """Rebuild the typed payload of a stored audit row."""
    model = _METADATA_BY_ACTION.get(AuditAction(action))
    if model is None:
        return UnknownAuditMetadata(action=action, raw=raw or {})
    return model.model_validate({**(raw or {}), "action": action})


# ═══════════════════════════════════════════
#  Read models
# ═══════════════════════════════════════════

class FlagAuditEntry(BaseModel):
    id: UUID
    flag_id: UUID
    action: AuditAction
    organization_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    metadata: AuditMetadata
    created_at: datetime


class HijackAttemptRecord(BaseModel):
    """Security event payload; also the JSON body handed to the retry task.

    The id is fixed when the event is detected so a retried write is idempotent.
    """
    id: UUID = Field(default_factory=uuid4)
    organization_id: UUID
    user_id: UUID
    session_id: str
    mismatch_type: MismatchType
    expected_ip: Optional[str] = None
    actual_ip: Optional[str] = None
    expected_user_agent: Optional[str] = None
    actual_user_agent: Optional[str] = None
    action: SessionAction
    blocked: bool
    request_path: Optional[str] = None
    request_method: Optional[str] = None
    created_at: datetime


class HijackAttempt(HijackAttemptRecord):
    model_config = ConfigDict(from_attributes=True)
