"""
Celery Tasks — event entry points of the document pipeline

Task: process_uploaded_file(bucket, key)
  Object-created event for a temp key (presigned uploads). Runs
  DocumentPipeline.handle_upload: sync OCR + cleanup inline, or start the
  async Textract job.

Task: handle_ocr_job_completion(message)
  Textract SNS notification. Runs DocumentPipeline.handle_job_completion:
  fetch results, clean, store, mark the Document cleaned (or failed).

Retry policy:
  RemoteServiceError (S3, DynamoDB, Textract, Bedrock, broker) is retried
  with exponential backoff, at most 3 times. Everything else
  (PreconditionError, NotFoundError, ResponseParseError, PipelineFailure)
  fails the task immediately; the pipeline has already recorded ``failed``
  on the Document where one exists.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any

from celery import Task

from ascribe.core.errors import RemoteServiceError
from ascribe.services.registry import get_services
from ascribe.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

RETRY_OPTIONS: dict[str, Any] = {
    "autoretry_for":     (RemoteServiceError,),
    "retry_backoff":     True,
    "retry_backoff_max": 600,
    "retry_jitter":      True,
    "max_retries":       3,
}


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Upload event
# ---------------------------------------------------------------------------

@celery_app.task(
    name="ascribe.workers.tasks.process_uploaded_file",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    **RETRY_OPTIONS,
)
def process_uploaded_file(self: Task, *, bucket: str, key: str) -> dict[str, Any]:
    logger.info("Upload event | bucket=%s key=%s attempt=%d", bucket, key, self.request.retries)
    outcome = run_async(get_services().pipeline.handle_upload(bucket, key))
    if outcome is None:
        return {"status": "ignored", "key": key}
    return outcome.to_dict()


# ---------------------------------------------------------------------------
# OCR job completion
# ---------------------------------------------------------------------------

@celery_app.task(
    name="ascribe.workers.tasks.handle_ocr_job_completion",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    **RETRY_OPTIONS,
)
def handle_ocr_job_completion(self: Task, *, message: dict[str, Any] | str) -> dict[str, Any]:
    logger.info("Job completion event | attempt=%d", self.request.retries)
    outcome = run_async(get_services().pipeline.handle_job_completion(message))
    if outcome is None:
        return {"status": "ignored"}
    return outcome.to_dict()
