"""Session integrity schemas."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from trustgate.core.enums import MismatchType, SessionAction


class SessionBinding(BaseModel):
    """The (ip, user-agent) pair a session is pinned to; both None until first bind."""
    model_config = ConfigDict(from_attributes=True, frozen=True, populate_by_name=True)

    session_id: str = Field(validation_alias="id")
    organization_id: UUID
    user_id: UUID
    bound_ip: Optional[str] = Field(default=None, validation_alias="ip_address")
    bound_user_agent: Optional[str] = Field(default=None, validation_alias="user_agent")
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    @property
    def is_bound(self) -> bool:
        return self.bound_ip is not None or self.bound_user_agent is not None


class VerifyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: SessionAction
    mismatch_type: Optional[MismatchType] = None
    degraded: bool = False


# ═══════════════════════════════════════════
#  API bodies
# ═══════════════════════════════════════════

class SessionIssue(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)
    user_id: UUID
    expires_at: datetime


class VerifyRequestBody(BaseModel):
    session_id: str
    user_id: UUID
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
