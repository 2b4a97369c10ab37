"""Celery application running the recovery ticks on a beat schedule."""

from celery import Celery
from celery.schedules import crontab

from cart_recovery.config import get_settings
from cart_recovery.log_config import configure_logging

settings = get_settings()
configure_logging(settings)

# Create Celery app
app = Celery(
    "recovery_worker",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=[
        "recovery_worker.tasks.detection",
        "recovery_worker.tasks.campaign",
        "recovery_worker.tasks.retention",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes
    task_soft_time_limit=540,  # 9 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="recovery",
    task_routes={
        "recovery_worker.tasks.*": {"queue": "recovery"},
    },
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Detect newly abandoned carts every 5 minutes
    "detect-abandoned-carts": {
        "task": "recovery_worker.tasks.detection.detect_abandoned_carts",
        "schedule": crontab(minute="*/5"),
    },
    # Send due recovery emails every 15 minutes
    "send-recovery-emails": {
        "task": "recovery_worker.tasks.campaign.send_recovery_emails",
        "schedule": crontab(minute="*/15"),
    },
    # Expire and purge old abandoned carts daily at 3 AM
    "sweep-abandoned-carts": {
        "task": "recovery_worker.tasks.retention.sweep_abandoned_carts",
        "schedule": crontab(hour=3, minute=0),
    },
}


def run() -> None:
    """Run the Celery worker."""
    app.worker_main(["worker", "--loglevel=info", "-Q", "recovery"])


if __name__ == "__main__":
    run()
