"""Feature flag schemas."""
from datetime import datetime
from typing import FrozenSet, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from trustgate.core.enums import DecisionSource, RuleType

FLAG_KEY_PATTERN = r"^[a-z0-9_]+$"
MAX_REASON_LENGTH = 1000


# ═══════════════════════════════════════════
#  Snapshots (repository / cache read models)
# ═══════════════════════════════════════════

class Flag(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    key: str
    name: str
    description: Optional[str] = None
    enabled: bool = False


class Rule(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    flag_id: UUID
    type: RuleType
    organization_ids: FrozenSet[UUID] = frozenset()
    percentage: int = 0
    priority: int = 100
    enabled: bool = True

    @field_validator("percentage", mode="before")
    @classmethod
    def _clamp_percentage(cls, v):
        # writes reject out-of-range values; reads never trust the row blindly
        return min(100, max(0, int(v or 0)))

    @field_validator("organization_ids", mode="before")
    @classmethod
    def _coerce_org_ids(cls, v):
        return frozenset(UUID(str(o)) for o in (v or ()))

    @property
    def sort_key(self) -> tuple:
        return (self.priority, self.id)


class Override(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    flag_id: UUID
    organization_id: UUID
    enabled: bool
    reason: str
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FlagDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    enabled: bool
    source: DecisionSource
    rule_id: Optional[UUID] = None
    degraded: bool = False


# ═══════════════════════════════════════════
#  API bodies
# ═══════════════════════════════════════════

class FlagCreate(BaseModel):
    key: str = Field(min_length=1, max_length=100, pattern=FLAG_KEY_PATTERN)
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    enabled: bool = False


class FlagUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    enabled: Optional[bool] = None


class RuleUpsert(BaseModel):
    id: Optional[UUID] = None
    type: RuleType
    organization_ids: List[UUID] = Field(default_factory=list)
    percentage: int = 0
    priority: int = 100
    enabled: bool = True


class OverrideSet(BaseModel):
    enabled: bool
    reason: str
    expires_at: Optional[datetime] = None
