import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from trustgate.celery_app import celery_app
from trustgate.config import settings
from trustgate.core.clock import utcnow
from trustgate.db.session import SessionLocal
from trustgate.schemas.audit import HijackAttemptRecord
from trustgate.services.audit_trail import persist_hijack_record, purge_audit_before
from trustgate.services.ops_alerts import raise_ops_alert

logger = logging.getLogger(__name__)


class AlertOnFailureTask(celery_app.Task):
    """Raise an operational alert once retries are exhausted."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        raise_ops_alert(
            "security_audit_retry_exhausted",
            "hijack attempt could not be persisted after retries",
            task_id=task_id,
            payload=args[0] if args else kwargs,
            error=exc.__class__.__name__,
        )


@celery_app.task(
    bind=True,
    base=AlertOnFailureTask,
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=settings.AUDIT_WRITE_MAX_RETRIES,
)
def persist_hijack_attempt(self, payload: dict) -> dict:
    """Background retry for a security event whose synchronous write failed."""
    record = HijackAttemptRecord.model_validate(payload)
    db = SessionLocal()
    try:
        written = persist_hijack_record(db, record)
    finally:
        db.close()

    if written:
        logger.info(
            "Hijack attempt %s persisted on retry %d", record.id, self.request.retries
        )
    return {"id": str(record.id), "written": written}


@celery_app.task
def purge_expired_audit_records() -> dict:
    """Daily retention sweep for flag audit logs and hijack attempts."""
    if settings.AUDIT_RETENTION_DAYS <= 0:
        return {"skipped": True}

    cutoff = utcnow() - timedelta(days=settings.AUDIT_RETENTION_DAYS)
    db = SessionLocal()
    try:
        removed = purge_audit_before(db, cutoff, batch_size=settings.AUDIT_PURGE_BATCH_SIZE)
    finally:
        db.close()
    return {"cutoff": cutoff.isoformat(), **removed}
