from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("leadflow_api", broker=settings.redis_url, backend=settings.redis_url, include=["app.crm.tasks"])
celery_app.conf.beat_schedule = {
    "nurture-scheduler-tick": {
        "task": "app.crm.tasks.run_nurture_scheduler",
        "schedule": float(settings.scheduler_poll_interval_seconds),
    },
    "nurture-scheduler-recovery": {
        "task": "app.crm.tasks.recover_stale_steps",
        "schedule": float(settings.scheduler_recovery_interval_seconds),
    },
}
celery_app.conf.timezone = "UTC"
