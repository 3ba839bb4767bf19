"""Session bindings and the hijacking attempts detected against them."""

import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Text, Index, Uuid, func

from trustgate.core.clock import utcnow
from trustgate.db.base_class import Base


class UserSession(Base):
    """Issued session; ip_address / user_agent stay NULL until the first request binds them."""
    __tablename__ = "sessions"

    id = Column(String(255), primary_key=True)
    organization_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)

    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), default=utcnow)


class SessionHijackingAttempt(Base):
    __tablename__ = "session_hijacking_attempts"
    __table_args__ = (
        Index("ix_session_hijacking_attempts_org_created", "organization_id", "created_at"),
        Index("ix_session_hijacking_attempts_user_created", "user_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, nullable=False)
    user_id = Column(Uuid, nullable=False)
    session_id = Column(String(255), nullable=False, index=True)

    mismatch_type = Column(String(50), nullable=False)  # ip_mismatch, user_agent_mismatch, both
    expected_ip = Column(String(45), nullable=True)
    actual_ip = Column(String(45), nullable=True)
    expected_user_agent = Column(Text, nullable=True)
    actual_user_agent = Column(Text, nullable=True)

    action = Column(String(20), nullable=False)         # allow, flag, block
    blocked = Column(Boolean, nullable=False, default=True)
    request_path = Column(Text, nullable=True)
    request_method = Column(String(16), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
