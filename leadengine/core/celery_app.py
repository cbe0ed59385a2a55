from celery import Celery

from leadengine.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leadengine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["leadengine.tasks"],
)

celery_app.conf.beat_schedule = {
    "auto-reassignment-sweep": {
        "task": "leadengine.tasks.run_auto_reassignment",
        "schedule": float(settings.auto_reassign_interval_seconds),
    },
    "sla-escalation-sweep": {
        "task": "leadengine.tasks.run_sla_escalation",
        "schedule": float(settings.sla_sweep_interval_seconds),
    },
    "portal-import-retry": {
        "task": "leadengine.tasks.retry_portal_imports",
        "schedule": float(settings.portal_retry_interval_seconds),
    },
    "pending-assignment-drain": {
        "task": "leadengine.tasks.drain_pending_assignments",
        "schedule": float(settings.pending_drain_interval_seconds),
    },
}

