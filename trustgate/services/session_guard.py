"""
Session Integrity Guard
=======================

Per session:  Unbound → Bound → {Verified, Flagged, Blocked}

- Unbound → Bound: the first request pins (ip, user-agent) with an atomic
  compare-and-set. A concurrent loser re-reads and verifies against the
  winner's values instead of binding.
- Verified: exact match → allow, nothing recorded.
- Flagged: user-agent differs, ip matches → flag (request proceeds), attempt
  recorded with blocked=false.
- Blocked: ip differs → block, session revoked, attempt recorded with
  blocked=true.

The binding itself is never changed by a flag/block outcome; re-binding
requires issuing a new session. Bindings are always read fresh from the
store. If the store is unavailable the request is allowed (degraded) and a
critical operational alert is raised.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from trustgate.core.clock import as_utc, utcnow
from trustgate.core.enums import MismatchType, SessionAction
from trustgate.core.errors import NotFoundError, StoreUnavailable
from trustgate.crud.tenant_repository import TenantRepository
from trustgate.logging_config import mask_session_id
from trustgate.schemas.audit import HijackAttemptRecord
from trustgate.schemas.session import SessionBinding, VerifyDecision
from trustgate.services.audit_trail import AuditTrail
from trustgate.services.ops_alerts import DECISIONS, DEGRADED_DECISIONS, raise_ops_alert

logger = logging.getLogger("trustgate.session_guard")

ACTION_FOR_MISMATCH = {
    MismatchType.USER_AGENT_MISMATCH: SessionAction.FLAG,
    MismatchType.IP_MISMATCH: SessionAction.BLOCK,
    MismatchType.BOTH: SessionAction.BLOCK,
}


def classify_mismatch(binding: SessionBinding, ip: str, user_agent: str) -> Optional[MismatchType]:
    ip_differs = (binding.bound_ip or "") != ip
    agent_differs = (binding.bound_user_agent or "") != user_agent
    if ip_differs and agent_differs:
        return MismatchType.BOTH
    if ip_differs:
        return MismatchType.IP_MISMATCH
    if agent_differs:
        return MismatchType.USER_AGENT_MISMATCH
    return None


class SessionIntegrityGuard:

    def __init__(self, audit: AuditTrail):
        self.audit = audit

    def issue(
        self,
        repo: TenantRepository,
        session_id: str,
        *,
        user_id: UUID,
        expires_at: datetime,
    ) -> SessionBinding:
        """Create the unbound session record; the first verified request binds it."""
        binding = repo.put_binding(session_id, user_id=user_id, expires_at=expires_at)
        repo.commit()
        return binding

    def verify(
        self,
        repo: TenantRepository,
        *,
        session_id: str,
        user_id: UUID,
        ip: Optional[str],
        user_agent: Optional[str],
        path: Optional[str] = None,
        method: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerifyDecision:
        now = now or utcnow()
        ip = ip or ""
        user_agent = user_agent or ""

        try:
            binding = repo.get_binding(session_id)
            if binding is None:
                raise NotFoundError(f"Session {session_id} not found", session_id=session_id)

            rejected = self._rejected(binding, user_id, now)
            if rejected:
                return rejected

            if not binding.is_bound:
                if repo.bind_session(session_id, ip=ip, user_agent=user_agent):
                    repo.commit()
                    logger.info("Session %s bound on first request", mask_session_id(session_id))
                    return self._decided(SessionAction.ALLOW)
                repo.commit()
                # Lost the race: verify against the winner's values
                binding = repo.get_binding(session_id)
                if binding is None:
                    raise NotFoundError(f"Session {session_id} not found", session_id=session_id)
                rejected = self._rejected(binding, user_id, now)
                if rejected:
                    return rejected

            mismatch = classify_mismatch(binding, ip, user_agent)
            # end the read transaction before the attempt is written elsewhere
            repo.commit()
        except StoreUnavailable as exc:
            DEGRADED_DECISIONS.labels(decision="session").inc()
            raise_ops_alert(
                "session_guard_store_unavailable",
                "session integrity check skipped, request allowed",
                severity="critical",
                session_id=mask_session_id(session_id),
                organization_id=repo.organization_id,
                error=str(exc),
            )
            return VerifyDecision(action=SessionAction.ALLOW, degraded=True)

        if mismatch is None:
            return self._decided(SessionAction.ALLOW)

        action = ACTION_FOR_MISMATCH[mismatch]
        blocked = action is SessionAction.BLOCK
        if blocked:
            self._invalidate(repo, session_id)

        logger.warning(
            "Session %s context mismatch (%s) on %s %s → %s",
            mask_session_id(session_id), mismatch.value, method, path, action.value,
            extra={"session_id": session_id},
        )
        self.audit.record_security_event(
            HijackAttemptRecord(
                organization_id=repo.organization_id,
                user_id=binding.user_id,
                session_id=session_id,
                mismatch_type=mismatch,
                expected_ip=binding.bound_ip,
                actual_ip=ip,
                expected_user_agent=binding.bound_user_agent,
                actual_user_agent=user_agent,
                action=action,
                blocked=blocked,
                request_path=path,
                request_method=method,
                created_at=now,
            )
        )
        return self._decided(action, mismatch)

    def _rejected(self, binding: SessionBinding, user_id: UUID, now: datetime) -> Optional[VerifyDecision]:
        """Block revoked, expired or foreign-user sessions without recording an attempt."""
        if binding.revoked_at is not None:
            reason = "revoked"
        elif as_utc(binding.expires_at) <= now:
            reason = "expired"
        elif binding.user_id != user_id:
            reason = "user mismatch"
        else:
            return None
        logger.info("Session %s rejected: %s", mask_session_id(binding.session_id), reason)
        return self._decided(SessionAction.BLOCK)

    def _invalidate(self, repo: TenantRepository, session_id: str) -> None:
        """Revoke the session; a failed revoke still blocks this request."""
        try:
            repo.revoke_session(session_id)
            repo.commit()
        except StoreUnavailable as exc:
            repo.db.rollback()
            raise_ops_alert(
                "session_revoke_failed",
                "blocked session could not be revoked",
                session_id=mask_session_id(session_id),
                error=str(exc),
            )

    @staticmethod
    def _decided(action: SessionAction, mismatch: Optional[MismatchType] = None) -> VerifyDecision:
        DECISIONS.labels(decision="session", outcome=action.value).inc()
        return VerifyDecision(action=action, mismatch_type=mismatch)
