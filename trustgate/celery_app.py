from celery import Celery
from celery.schedules import crontab
from trustgate.config import settings

celery_app = Celery(
    "trustgate",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.broker_connection_retry_on_startup = True

celery_app.conf.task_routes = {
    "trustgate.tasks.*": {"queue": "audit"}
}

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
)

celery_app.conf.beat_schedule = {
    "purge-expired-audit-records": {
        "task": "trustgate.tasks.audit_tasks.purge_expired_audit_records",
        "schedule": crontab(hour=3, minute=30),
    },
}

celery_app.autodiscover_tasks(['trustgate.tasks'])
