"""trust engine tables

Flags, rules, per-organization overrides and their audit log; issued
sessions and the hijacking attempts detected against them.

Revision ID: 0001_trust_engine
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_trust_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "flags",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_flags_key", "flags", ["key"], unique=True)

    op.create_table(
        "flag_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "flag_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("flags.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column(
            "organization_ids", postgresql.ARRAY(postgresql.UUID(as_uuid=True)),
            nullable=False, server_default="{}",
        ),
        sa.Column("percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("percentage BETWEEN 0 AND 100", name="ck_flag_rules_percentage"),
    )
    op.create_index("ix_flag_rules_flag_id_priority", "flag_rules", ["flag_id", "priority"])

    op.create_table(
        "flag_overrides",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "flag_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("flags.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("flag_id", "organization_id", name="uq_flag_overrides_flag_org"),
    )
    op.create_index("ix_flag_overrides_organization_id", "flag_overrides", ["organization_id"])
    op.create_index("ix_flag_overrides_expires_at", "flag_overrides", ["expires_at"])

    # No FK on flag_id: audit history outlives the flag
    op.create_table(
        "flag_audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("flag_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_flag_audit_logs_flag_created", "flag_audit_logs", ["flag_id", "created_at"])
    op.create_index("ix_flag_audit_logs_org_created", "flag_audit_logs", ["organization_id", "created_at"])
    op.create_index("ix_flag_audit_logs_action_created", "flag_audit_logs", ["action", "created_at"])

    op.create_table(
        "sessions",
        sa.Column("id", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sessions_organization_id", "sessions", ["organization_id"])
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"])

    op.create_table(
        "session_hijacking_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("session_id", sa.String(length=255), nullable=False),
        sa.Column("mismatch_type", sa.String(length=50), nullable=False),
        sa.Column("expected_ip", sa.String(length=45), nullable=True),
        sa.Column("actual_ip", sa.String(length=45), nullable=True),
        sa.Column("expected_user_agent", sa.Text(), nullable=True),
        sa.Column("actual_user_agent", sa.Text(), nullable=True),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("request_path", sa.Text(), nullable=True),
        sa.Column("request_method", sa.String(length=16), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_session_hijacking_attempts_session_id", "session_hijacking_attempts", ["session_id"]
    )
    op.create_index(
        "ix_session_hijacking_attempts_org_created",
        "session_hijacking_attempts", ["organization_id", "created_at"],
    )
    op.create_index(
        "ix_session_hijacking_attempts_user_created",
        "session_hijacking_attempts", ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("session_hijacking_attempts")
    op.drop_table("sessions")
    op.drop_table("flag_audit_logs")
    op.drop_table("flag_overrides")
    op.drop_table("flag_rules")
    op.drop_table("flags")
