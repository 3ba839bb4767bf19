"""
Decision Facade
===============

Single entry point for the request path (flag evaluation, request
verification) and the administrative surface (overrides, rules, flags).

Every call opens its own SQLAlchemy session and a TenantRepository bound to
the organization passed in; nothing is shared between calls except the
flag/rule cache.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from trustgate.core.enums import RuleType, SessionAction
from trustgate.core.errors import TenantScopeViolation
from trustgate.crud import crud_flag
from trustgate.crud.tenant_repository import OrgContext, TenantRepository, store_call, to_audit_entry
from trustgate.schemas.audit import FlagAuditEntry, HijackAttempt
from trustgate.schemas.feature_flag import Flag, FlagDecision, Override, Rule
from trustgate.schemas.session import SessionBinding, VerifyDecision
from trustgate.services.audit_trail import AuditTrail
from trustgate.services.flag_admin import FlagAdminService
from trustgate.services.flag_cache import FlagCache
from trustgate.services.rollout import RolloutResolver
from trustgate.services.session_guard import SessionIntegrityGuard

logger = logging.getLogger("trustgate.facade")

OrgLike = Union[OrgContext, UUID, str]


def as_org_context(org: OrgLike, user_id: Optional[UUID] = None) -> OrgContext:
    if isinstance(org, OrgContext):
        return org
    return OrgContext(organization_id=org, user_id=user_id)


class TrustDecisionFacade:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        cache: Optional[FlagCache] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self._session_factory = session_factory
        self.cache = cache
        self.audit = audit or AuditTrail(session_factory)
        self.rollout = RolloutResolver()
        self.guard = SessionIntegrityGuard(self.audit)
        self.admin = FlagAdminService(session_factory, audit=self.audit, cache=cache)

    @contextmanager
    def repository(self, org: OrgLike):
        db = self._session_factory()
        try:
            yield TenantRepository(db, as_org_context(org), self.cache)
        finally:
            db.close()

    # ═══════════════════════════════════════════
    #  Request path
    # ═══════════════════════════════════════════

    def evaluate_flag(self, key: str, org: OrgLike, *, now: Optional[datetime] = None) -> FlagDecision:
        with self.repository(org) as repo:
            return self.rollout.resolve(repo, key, now=now)

    def evaluate_all(self, org: OrgLike, *, now: Optional[datetime] = None) -> Dict[str, FlagDecision]:
        with self.repository(org) as repo:
            return self.rollout.resolve_all(repo, now=now)

    def verify_request(
        self,
        session_id: str,
        org: OrgLike,
        user_id: UUID,
        ip: Optional[str],
        user_agent: Optional[str],
        path: Optional[str] = None,
        method: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> VerifyDecision:
        with self.repository(org) as repo:
            try:
                return self.guard.verify(
                    repo,
                    session_id=session_id,
                    user_id=user_id,
                    ip=ip,
                    user_agent=user_agent,
                    path=path,
                    method=method,
                    now=now,
                )
            except TenantScopeViolation:
                logger.warning(
                    "Session %s presented under organization %s it does not belong to",
                    session_id, repo.organization_id,
                )
                return VerifyDecision(action=SessionAction.BLOCK)

    def issue_session(
        self,
        session_id: str,
        org: OrgLike,
        user_id: UUID,
        expires_at: datetime,
    ) -> SessionBinding:
        with self.repository(org) as repo:
            return self.guard.issue(repo, session_id, user_id=user_id, expires_at=expires_at)

    # ═══════════════════════════════════════════
    #  Administrative surface
    # ═══════════════════════════════════════════

    def set_override(
        self,
        flag_id: UUID,
        org_id: OrgLike,
        enabled: bool,
        reason: str,
        expires_at: Optional[datetime] = None,
        *,
        actor_user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> Override:
        return self.admin.set_override(
            flag_id,
            as_org_context(org_id, actor_user_id),
            enabled=enabled,
            reason=reason,
            expires_at=expires_at,
            now=now,
        )

    def clear_override(
        self,
        flag_id: UUID,
        org_id: OrgLike,
        *,
        actor_user_id: Optional[UUID] = None,
    ) -> None:
        self.admin.clear_override(flag_id, as_org_context(org_id, actor_user_id))

    def upsert_rule(
        self,
        flag_id: UUID,
        type: Union[RuleType, str],
        organization_ids: Optional[Iterable[UUID]] = None,
        percentage: Optional[int] = None,
        priority: int = 100,
        enabled: bool = True,
        *,
        rule_id: Optional[UUID] = None,
        actor: Optional[OrgContext] = None,
    ) -> Rule:
        return self.admin.upsert_rule(
            flag_id,
            rule_type=type,
            organization_ids=organization_ids,
            percentage=percentage,
            priority=priority,
            enabled=enabled,
            rule_id=rule_id,
            actor=actor,
        )

    def delete_rule(self, rule_id: UUID, *, actor: Optional[OrgContext] = None) -> None:
        self.admin.delete_rule(rule_id, actor=actor)

    def list_rules(self, flag_id: UUID) -> List[Rule]:
        return self.admin.list_rules(flag_id)

    def create_flag(
        self,
        key: str,
        name: str,
        *,
        description: Optional[str] = None,
        enabled: bool = False,
        actor: Optional[OrgContext] = None,
    ) -> Flag:
        return self.admin.create_flag(
            key=key, name=name, description=description, enabled=enabled, actor=actor
        )

    def update_flag(self, key: str, changes: dict, *, actor: Optional[OrgContext] = None) -> Flag:
        return self.admin.update_flag(key, changes, actor=actor)

    def delete_flag(self, key: str, *, actor: Optional[OrgContext] = None) -> None:
        self.admin.delete_flag(key, actor=actor)

    def get_flag(self, key: str) -> Flag:
        return self.admin.get_flag(key)

    def list_flags(self) -> List[Flag]:
        return self.admin.list_flags()

    # ═══════════════════════════════════════════
    #  Audit history
    # ═══════════════════════════════════════════

    def flag_history(self, flag_id: UUID, *, skip: int = 0, limit: int = 100) -> List[FlagAuditEntry]:
        """Platform view across organizations."""
        db = self._session_factory()
        try:
            with store_call("flag_history"):
                rows = crud_flag.list_flag_audit(db, flag_id=flag_id, skip=skip, limit=limit)
            return [to_audit_entry(r) for r in rows]
        finally:
            db.close()

    def tenant_flag_history(
        self,
        org: OrgLike,
        *,
        flag_id: Optional[UUID] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[FlagAuditEntry]:
        with self.repository(org) as repo:
            return repo.list_flag_audit(flag_id=flag_id, action=action, skip=skip, limit=limit)

    def hijack_attempts(
        self,
        org: OrgLike,
        *,
        session_id: Optional[str] = None,
        user_id: Optional[UUID] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[HijackAttempt]:
        with self.repository(org) as repo:
            return repo.list_hijack_attempts(
                session_id=session_id, user_id=user_id, skip=skip, limit=limit
            )
