"""Celery application configuration."""

from celery import Celery

from snowball.core.config import settings

# Create Celery app
celery_app = Celery(
    "snowball",
    broker=str(settings.redis_url),
    backend=str(settings.redis_url),
    include=[
        "snowball.workers.tasks.snowball",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task safety limits
    task_time_limit=settings.snowball_processing_timeout_seconds,
    task_soft_time_limit=settings.snowball_processing_timeout_seconds - 30,
    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    # Unacked jobs are redelivered once the visibility timeout passes
    broker_transport_options={
        "visibility_timeout": settings.snowball_processing_timeout_seconds + 60,
        "queue_order_strategy": "priority",
    },
    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.snowball_worker_concurrency,
    # Default queue name (must match worker -Q flag)
    task_default_queue="default",
    task_routes={
        "tasks.snowball.process_snowball": {"queue": "snowball"},
        "tasks.snowball.notify_repository_owner": {"queue": "default"},
        "tasks.snowball.send_opt_in_invites": {"queue": "default"},
    },
)


# Task base class with common error handling
class BaseTask(celery_app.Task):  # type: ignore[misc, name-defined]
    """Base task class with error handling."""

    abstract = True
    autoretry_for = (Exception,)
    retry_backoff = True
    retry_backoff_max = 600  # Max 10 minutes between retries
    retry_jitter = True
    max_retries = 3
