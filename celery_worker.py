from trustgate.celery_app import celery_app as app

# Register tasks
import trustgate.tasks.audit_tasks  # noqa: F401, E402
