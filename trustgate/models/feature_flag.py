"""Feature flags for progressive rollout per organization.

- Flag: platform-wide named capability with a default state
- Rule: prioritized condition (org_list / percentage / global) deciding the flag
- Override: per-organization manual pin that bypasses every rule
- Audit log: append-only record of every administrative change
"""

import uuid
from sqlalchemy import (
    CheckConstraint, Column, String, Boolean, Integer, DateTime, Text, ForeignKey, Index,
    UniqueConstraint, Uuid, func,
)
from sqlalchemy.orm import relationship

from trustgate.core.clock import utcnow
from trustgate.db.base_class import Base, JSONVariant, UuidList


class FeatureFlag(Base):
    __tablename__ = "flags"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    key = Column(String(100), unique=True, nullable=False, index=True)  # e.g. "new_onboarding_wizard"
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, nullable=False, default=False)            # default when nothing matches

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    rules = relationship(
        "FlagRule", back_populates="flag", cascade="all, delete-orphan", passive_deletes=True
    )
    overrides = relationship(
        "FlagOverride", back_populates="flag", cascade="all, delete-orphan", passive_deletes=True
    )


class FlagRule(Base):
    __tablename__ = "flag_rules"
    __table_args__ = (
        Index("ix_flag_rules_flag_id_priority", "flag_id", "priority"),
        CheckConstraint("percentage BETWEEN 0 AND 100", name="ck_flag_rules_percentage"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    flag_id = Column(Uuid, ForeignKey("flags.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(50), nullable=False)                           # org_list, percentage, global
    organization_ids = Column(UuidList, nullable=False, default=list)      # org_list rules only
    percentage = Column(Integer, nullable=False, default=0)             # 0-100
    priority = Column(Integer, nullable=False, default=100)             # lower runs first
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    flag = relationship("FeatureFlag", back_populates="rules")


class FlagOverride(Base):
    __tablename__ = "flag_overrides"
    __table_args__ = (
        UniqueConstraint("flag_id", "organization_id", name="uq_flag_overrides_flag_org"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    flag_id = Column(Uuid, ForeignKey("flags.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(Uuid, nullable=False, index=True)
    enabled = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)  # expired rows are kept

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    flag = relationship("FeatureFlag", back_populates="overrides")


class FlagAuditLog(Base):
    """Append-only; flag_id has no FK so history outlives a deleted flag."""
    __tablename__ = "flag_audit_logs"
    __table_args__ = (
        Index("ix_flag_audit_logs_flag_created", "flag_id", "created_at"),
        Index("ix_flag_audit_logs_org_created", "organization_id", "created_at"),
        Index("ix_flag_audit_logs_action_created", "action", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    flag_id = Column(Uuid, nullable=False)
    action = Column(String(50), nullable=False)                         # override_set, rule_upserted, ...
    organization_id = Column(Uuid, nullable=True)
    user_id = Column(Uuid, nullable=True)
    metadata_ = Column("metadata", JSONVariant, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
