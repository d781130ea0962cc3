from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from .core.config import settings
from .core.logging_config import setup_logging


celery_app = Celery(
    "knowledge_engine_worker",
    broker=settings.broker_url,
    backend=settings.broker_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    task_track_started=True,

    # Reliability settings
    task_acks_late=True,  # Tasks are acknowledged after completion, not before
    task_reject_on_worker_lost=True,  # Re-queue tasks if worker crashes

    # Performance settings
    worker_prefetch_multiplier=1,  # Ingestion jobs are long; don't hoard them
    worker_max_tasks_per_child=1000,  # Restart worker after 1000 tasks (prevent memory leaks)

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour

    task_routes={
        "knowledge_engine.tasks.ingestion_tasks.process_ingestion_job": {"queue": "high_priority"},
        "knowledge_engine.tasks.ingestion_tasks.reap_stalled_jobs": {"queue": "low_priority"},
    },

    task_default_queue="default",
    task_default_priority=5,
)

celery_app.conf.beat_schedule = {
    "reap-stalled-ingestion-jobs": {
        "task": "knowledge_engine.tasks.ingestion_tasks.reap_stalled_jobs",
        "schedule": float(settings.JOB_REAPER_INTERVAL_SECONDS),
    },
}


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    setup_logging(settings.LOG_LEVEL)


# Import tasks explicitly to ensure they're registered
from .tasks import ingestion_tasks  # noqa: E402,F401
