"""
Audit Trail
===========

Two durability tiers:

- Administrative changes (flag / rule / override edits) are added to the
  caller's session and commit together with the mutation. If the audit row
  cannot be written the whole transaction is rolled back.
- Security events (hijack attempts) are written after the decision has been
  applied, in their own session. A failed write never reverses the decision:
  it raises an operational alert and is handed to a Celery task that retries
  with exponential backoff.

Retention: rows older than AUDIT_RETENTION_DAYS are purged in batches by the
`purge_expired_audit_records` beat task.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional
from uuid import UUID

from kombu.exceptions import KombuError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from trustgate.core.errors import AuditWriteFailure
from trustgate.logging_config import mask_session_id
from trustgate.models.feature_flag import FlagAuditLog
from trustgate.models.session import SessionHijackingAttempt
from trustgate.schemas.audit import AuditMetadata, HijackAttemptRecord
from trustgate.services.ops_alerts import HIJACK_ATTEMPTS, raise_ops_alert

logger = logging.getLogger("trustgate.audit")


def build_hijack_row(record: HijackAttemptRecord) -> SessionHijackingAttempt:
    data = record.model_dump()
    data["mismatch_type"] = record.mismatch_type.value
    data["action"] = record.action.value
    return SessionHijackingAttempt(**data)


def persist_hijack_record(db: Session, record: HijackAttemptRecord) -> bool:
    """Insert one hijack row. Returns False if a row with this id already exists."""
    db.add(build_hijack_row(record))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if db.get(SessionHijackingAttempt, record.id) is not None:
            return False
        raise
    return True


class AuditTrail:

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ── Tier (a): transactional with the mutation ──

    def record_admin_action(
        self,
        db: Session,
        *,
        flag_id: UUID,
        metadata: AuditMetadata,
        organization_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
    ) -> FlagAuditLog:
        entry = FlagAuditLog(
            flag_id=flag_id,
            action=metadata.action,
            organization_id=organization_id,
            user_id=user_id,
            metadata_=metadata.model_dump(mode="json", exclude={"action"}),
        )
        try:
            db.add(entry)
            db.flush()
        except SQLAlchemyError as exc:
            logger.error("Audit write failed for %s on flag %s: %s", metadata.action, flag_id, exc)
            raise AuditWriteFailure(
                f"could not audit {metadata.action}", flag_id=str(flag_id)
            ) from exc
        return entry

    # ── Tier (b): after the security decision ──

    def record_security_event(self, record: HijackAttemptRecord) -> bool:
        """Persist a hijack attempt. Returns True when written synchronously."""
        HIJACK_ATTEMPTS.labels(
            mismatch_type=record.mismatch_type.value, action=record.action.value
        ).inc()
        db = self._session_factory()
        try:
            persist_hijack_record(db, record)
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            raise_ops_alert(
                "security_audit_write_failed",
                "hijack attempt not persisted, scheduling retry",
                session_id=mask_session_id(record.session_id),
                attempt_id=record.id,
                error=exc.__class__.__name__,
            )
        finally:
            db.close()

        self._schedule_retry(record)
        return False

    def _schedule_retry(self, record: HijackAttemptRecord) -> None:
        from trustgate.tasks.audit_tasks import persist_hijack_attempt

        payload = record.model_dump(mode="json")
        try:
            persist_hijack_attempt.delay(payload)
        except (KombuError, OSError) as exc:
            raise_ops_alert(
                "security_audit_retry_unavailable",
                "retry queue unreachable; hijack attempt only in this log record",
                payload=payload,
                error=exc.__class__.__name__,
            )


def purge_audit_before(db: Session, cutoff: datetime, *, batch_size: int = 1000) -> Dict[str, int]:
    """Delete audit and hijack rows created before `cutoff`, one batch per commit."""
    removed = {}
    for name, model in (
        ("flag_audit_logs", FlagAuditLog),
        ("session_hijacking_attempts", SessionHijackingAttempt),
    ):
        total = 0
        while True:
            ids = [
                row_id
                for (row_id,) in db.query(model.id)
                .filter(model.created_at < cutoff)
                .limit(batch_size)
                .all()
            ]
            if not ids:
                break
            db.query(model).filter(model.id.in_(ids)).delete(synchronize_session=False)
            db.commit()
            total += len(ids)
        removed[name] = total
        if total:
            logger.info("Purged %d %s rows older than %s", total, name, cutoff.isoformat())
    return removed
