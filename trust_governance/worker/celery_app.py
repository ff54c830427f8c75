"""
Celery Application Configuration
"""
from celery import Celery
from trust_governance.config import settings

# Create Celery app
celery_app = Celery(
    "trust_governance_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "trust_governance.worker.tasks"
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max
    task_soft_time_limit=540,  # 9 minutes soft limit
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,  # Results expire after 1 hour

    # Beat schedule for periodic tasks
    beat_schedule={
        "drain-trust-recalc-queue": {
            "task": "trust_governance.worker.tasks.drain_trust_queue",
            "schedule": float(settings.TRUST_QUEUE_DRAIN_INTERVAL_SEC),
        },
        "sweep-jury-deadlines": {
            "task": "trust_governance.worker.tasks.sweep_jury_deadlines",
            "schedule": float(settings.JURY_SWEEP_INTERVAL_SEC),
        },
    }
)

# Task routing
celery_app.conf.task_routes = {
    "trust_governance.worker.tasks.drain_trust_queue": {"queue": "trust"},
    "trust_governance.worker.tasks.recalc_content": {"queue": "trust"},
    "trust_governance.worker.tasks.*": {"queue": "default"},
}

if __name__ == "__main__":
    celery_app.start()
