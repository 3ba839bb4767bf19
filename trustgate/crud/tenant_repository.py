"""
Tenant-scoped repository
========================

Every read and write goes through a TenantRepository bound to exactly one
OrgContext. There is no unscoped query path and no ambient tenant state:
the organization is a constructor argument, and rows that come back for a
different organization raise TenantScopeViolation instead of being dropped.

Flags and rules are a platform catalog and may be served from FlagCache;
rules are projected to the caller's organization before they leave this
module. Overrides and session bindings always hit the store.
"""
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from trustgate.core.clock import as_utc, utcnow
from trustgate.core.enums import AuditAction, RuleType
from trustgate.core.errors import ConfigurationError, StoreUnavailable, TenantScopeViolation, ValidationError
from trustgate.models.feature_flag import FeatureFlag, FlagAuditLog, FlagOverride, FlagRule
from trustgate.models.session import SessionHijackingAttempt, UserSession
from trustgate.schemas.audit import FlagAuditEntry, HijackAttempt, parse_audit_metadata
from trustgate.schemas.feature_flag import Flag, Override, Rule
from trustgate.schemas.session import SessionBinding
from trustgate.services.flag_cache import FlagCache, flag_index_key, flag_key, rules_key

logger = logging.getLogger("trustgate.repository")

_UPSERT_BUILDERS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class OrgContext:
    """Explicit organization capability passed to every repository call."""
    organization_id: UUID
    user_id: Optional[UUID] = None

    def __post_init__(self):
        if not isinstance(self.organization_id, UUID):
            object.__setattr__(self, "organization_id", UUID(str(self.organization_id)))
        if self.user_id is not None and not isinstance(self.user_id, UUID):
            object.__setattr__(self, "user_id", UUID(str(self.user_id)))


@contextmanager
def store_call(operation: str):
    """Translate driver / pool failures into StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        raise StoreUnavailable(
            f"{operation} failed: {exc.__class__.__name__}", operation=operation
        ) from exc


class TenantRepository:

    def __init__(self, db: Session, org: OrgContext, cache: Optional[FlagCache] = None):
        if not isinstance(org, OrgContext):
            raise TypeError("TenantRepository requires an OrgContext")
        self.db = db
        self.org = org
        self.cache = cache

    @property
    def organization_id(self) -> UUID:
        return self.org.organization_id

    def _check_rows(self, rows: Iterable, operation: str) -> None:
        for row in rows:
            if row.organization_id != self.organization_id:
                logger.error(
                    "Cross-tenant row in %s: expected org %s, got %s",
                    operation, self.organization_id, row.organization_id,
                )
                raise TenantScopeViolation(
                    f"{operation} returned rows outside organization {self.organization_id}",
                    operation=operation,
                )

    def commit(self) -> None:
        with store_call("commit"):
            self.db.commit()

    # ═══════════════════════════════════════════
    #  Flag catalog (cacheable)
    # ═══════════════════════════════════════════

    def get_flag(self, key: str) -> Optional[Flag]:
        cache_key = flag_key(key)
        cached = self.cache.get(cache_key) if self.cache else None
        if cached is not None:
            return Flag.model_validate(cached)

        with store_call("get_flag"):
            row = self.db.query(FeatureFlag).filter(FeatureFlag.key == key).first()
        if row is None:
            return None
        flag = Flag.model_validate(row)
        if self.cache:
            self.cache.set(cache_key, flag.model_dump(mode="json"))
        return flag

    def list_flags(self) -> List[Flag]:
        cached = self.cache.get(flag_index_key()) if self.cache else None
        if cached is not None:
            return [Flag.model_validate(f) for f in cached]

        with store_call("list_flags"):
            rows = self.db.query(FeatureFlag).order_by(FeatureFlag.key).all()
        flags = [Flag.model_validate(r) for r in rows]
        if self.cache:
            self.cache.set(flag_index_key(), [f.model_dump(mode="json") for f in flags])
        return flags

    def list_rules(self, flag_id: UUID) -> List[Rule]:
        """Rules of a flag, each projected to this organization."""
        cache_key = rules_key(flag_id)
        cached = self.cache.get(cache_key) if self.cache else None
        if cached is not None:
            rules = [Rule.model_validate(r) for r in cached]
        else:
            with store_call("list_rules"):
                rows = self.db.query(FlagRule).filter(FlagRule.flag_id == flag_id).all()
            rules = [Rule.model_validate(r) for r in rows]
            if self.cache:
                self.cache.set(cache_key, [r.model_dump(mode="json") for r in rules])
        return [self._project_rule(r) for r in rules]

    def _project_rule(self, rule: Rule) -> Rule:
        # Other tenants' ids never leave the repository
        if rule.type is RuleType.ORG_LIST and self.organization_id in rule.organization_ids:
            visible = frozenset({self.organization_id})
        else:
            visible = frozenset()
        return rule.model_copy(update={"organization_ids": visible})

    # ═══════════════════════════════════════════
    #  Overrides (never cached)
    # ═══════════════════════════════════════════

    def get_override(self, flag_id: UUID, *, now: Optional[datetime] = None) -> Optional[Override]:
        """Live override only; expires_at <= now counts as absent."""
        now = now or utcnow()
        with store_call("get_override"):
            rows = (
                self.db.query(FlagOverride)
                .filter(
                    FlagOverride.flag_id == flag_id,
                    FlagOverride.organization_id == self.organization_id,
                    or_(FlagOverride.expires_at.is_(None), FlagOverride.expires_at > now),
                )
                .execution_options(populate_existing=True)
                .all()
            )
        self._check_rows(rows, "get_override")
        return Override.model_validate(rows[0]) if rows else None

    def upsert_override(
        self,
        flag_id: UUID,
        *,
        enabled: bool,
        reason: str,
        expires_at: Optional[datetime],
    ) -> Override:
        """INSERT .. ON CONFLICT (flag_id, organization_id) DO UPDATE; last writer wins."""
        now = utcnow()
        dialect = self.db.get_bind().dialect.name
        builder = _UPSERT_BUILDERS.get(dialect)
        if builder is None:
            raise ConfigurationError(f"override upsert is not supported on {dialect}", dialect=dialect)

        stmt = builder(FlagOverride).values(
            id=uuid.uuid4(),
            flag_id=flag_id,
            organization_id=self.organization_id,
            enabled=enabled,
            reason=reason,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["flag_id", "organization_id"],
            set_={
                "enabled": stmt.excluded.enabled,
                "reason": stmt.excluded.reason,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with store_call("upsert_override"):
            self.db.execute(stmt)
            row = self._stored_override(flag_id)
        return Override.model_validate(row)

    def delete_override(self, flag_id: UUID, *, now: Optional[datetime] = None) -> Optional[Override]:
        """Remove the live override; expired rows stay for history."""
        now = now or utcnow()
        with store_call("delete_override"):
            row = self._stored_override(flag_id)
            if row is None:
                return None
            previous = Override.model_validate(row)
            if previous.expires_at is not None and as_utc(previous.expires_at) <= as_utc(now):
                return None
            self.db.delete(row)
            self.db.flush()
        return previous

    def _stored_override(self, flag_id: UUID) -> Optional[FlagOverride]:
        rows = (
            self.db.query(FlagOverride)
            .filter(
                FlagOverride.flag_id == flag_id,
                FlagOverride.organization_id == self.organization_id,
            )
            .execution_options(populate_existing=True)
            .all()
        )
        self._check_rows(rows, "get_stored_override")
        return rows[0] if rows else None

    # ═══════════════════════════════════════════
    #  Session bindings (never cached)
    # ═══════════════════════════════════════════

    def put_binding(
        self,
        session_id: str,
        *,
        user_id: UUID,
        expires_at: datetime,
    ) -> SessionBinding:
        """Create an unbound session at issuance."""
        row = UserSession(
            id=session_id,
            organization_id=self.organization_id,
            user_id=user_id,
            expires_at=expires_at,
        )
        with store_call("put_binding"):
            self.db.add(row)
            try:
                self.db.flush()
            except IntegrityError as exc:
                self.db.rollback()
                raise ValidationError(f"Session {session_id} already exists") from exc
        return SessionBinding.model_validate(row)

    def get_binding(self, session_id: str) -> Optional[SessionBinding]:
        """Fresh store read; a session owned by another organization is rejected."""
        with store_call("get_binding"):
            rows = (
                self.db.query(UserSession)
                .filter(UserSession.id == session_id)
                .execution_options(populate_existing=True)
                .all()
            )
        self._check_rows(rows, "get_binding")
        return SessionBinding.model_validate(rows[0]) if rows else None

    def bind_session(self, session_id: str, *, ip: str, user_agent: str) -> bool:
        """Atomic compare-and-set from unbound to bound. True if this call won."""
        stmt = (
            update(UserSession)
            .where(
                UserSession.id == session_id,
                UserSession.organization_id == self.organization_id,
                UserSession.ip_address.is_(None),
                UserSession.user_agent.is_(None),
                UserSession.revoked_at.is_(None),
            )
            .values(ip_address=ip, user_agent=user_agent, last_used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        with store_call("bind_session"):
            result = self.db.execute(stmt)
        return result.rowcount == 1

    def revoke_session(self, session_id: str) -> bool:
        stmt = (
            update(UserSession)
            .where(
                UserSession.id == session_id,
                UserSession.organization_id == self.organization_id,
                UserSession.revoked_at.is_(None),
            )
            .values(revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        with store_call("revoke_session"):
            result = self.db.execute(stmt)
        return result.rowcount == 1

    # ═══════════════════════════════════════════
    #  Audit history (tenant view)
    # ═══════════════════════════════════════════

    def list_flag_audit(
        self,
        *,
        flag_id: Optional[UUID] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[FlagAuditEntry]:
        query = self.db.query(FlagAuditLog).filter(
            FlagAuditLog.organization_id == self.organization_id
        )
        if flag_id:
            query = query.filter(FlagAuditLog.flag_id == flag_id)
        if action:
            query = query.filter(FlagAuditLog.action == action)
        with store_call("list_flag_audit"):
            rows = query.order_by(FlagAuditLog.created_at.desc()).offset(skip).limit(limit).all()
        self._check_rows(rows, "list_flag_audit")
        return [to_audit_entry(r) for r in rows]

    def list_hijack_attempts(
        self,
        *,
        session_id: Optional[str] = None,
        user_id: Optional[UUID] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[HijackAttempt]:
        query = self.db.query(SessionHijackingAttempt).filter(
            SessionHijackingAttempt.organization_id == self.organization_id
        )
        if session_id:
            query = query.filter(SessionHijackingAttempt.session_id == session_id)
        if user_id:
            query = query.filter(SessionHijackingAttempt.user_id == user_id)
        with store_call("list_hijack_attempts"):
            rows = (
                query.order_by(SessionHijackingAttempt.created_at.desc())
                .offset(skip)
                .limit(limit)
                .all()
            )
        self._check_rows(rows, "list_hijack_attempts")
        return [HijackAttempt.model_validate(r) for r in rows]


def to_audit_entry(row: FlagAuditLog) -> FlagAuditEntry:
    return FlagAuditEntry(
        id=row.id,
        flag_id=row.flag_id,
        action=AuditAction(row.action),
        organization_id=row.organization_id,
        user_id=row.user_id,
        metadata=parse_audit_metadata(row.action, row.metadata_),
        created_at=row.created_at,
    )
