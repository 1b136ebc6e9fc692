"""
Celery Application Factory

Runs the two event-driven pipeline entry points off the request path.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) for local dev.
Result backend: Redis (results are informational, Document.status is the
source of truth).

Queue topology:
  documents.ingest   — upload events (temp object created)
  documents.ocr      — Textract job-completion notifications

Task payloads carry S3 keys and job messages only, never file bytes.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from ascribe.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ingest",
        durable=True,
    ),
    Queue(
        "documents.ocr",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ocr",
        durable=True,
    ),
)

TASK_ROUTES = {
    "ascribe.workers.tasks.process_uploaded_file":     {"queue": "documents.ingest"},
    "ascribe.workers.tasks.handle_ocr_job_completion": {"queue": "documents.ocr"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("ascribe")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        # Sync OCR + cleanup of a 5 MiB file fits well inside this; async
        # jobs only fetch results here.
        task_soft_time_limit=300,
        task_time_limit=360,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["ascribe.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger, *args, **kwargs):
    level = logging.DEBUG if get_settings().debug else logging.INFO
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s key=%s",
        task_id, task.name, kwargs.get("key", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s",
        task_id, task.name, state,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s key=%s error=%s",
        task_id, kwargs.get("key", "-"), exception,
        exc_info=(type(exception), exception, traceback),
    )
