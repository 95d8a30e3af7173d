"""
Celery Application Configuration

Configures Celery with:
- A dedicated queue for tile pyramid jobs
- No automatic retries (a failed job is reported through its marker)
- Result backend for task tracking
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "imagery_tiles",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "src.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,

    # Result expiration
    result_expires=86400,  # 24 hours

    # Tiling is CPU and disk heavy
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("tiles", routing_key="tiles.#"),
    ),

    # Task routing
    task_routes={
        "src.pipeline.tasks.build_tile_pyramid": {"queue": "tiles"},
    },

    # A job runs at most once
    task_max_retries=0,
    task_acks_late=False,

    # Local development without a broker
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=False,
)
