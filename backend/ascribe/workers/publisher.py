"""Publishes pipeline events to the Celery broker."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from kombu.exceptions import KombuError

from ascribe.core.errors import TaskQueueError

logger = logging.getLogger(__name__)


class TaskPublisher:
    """
    Sends pipeline tasks to the broker.
    Task import is deferred so the broker connection is not required at
    module load time.
    """

    async def _apply(self, task, kwargs: dict[str, Any], target: str) -> str:
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, lambda: task.apply_async(kwargs=kwargs))
        except (KombuError, OSError) as exc:
            raise TaskQueueError("publish", target, exc) from exc
        return result.id

    async def publish_upload(self, bucket: str, key: str) -> str:
        from ascribe.workers.tasks import process_uploaded_file

        task_id = await self._apply(process_uploaded_file, {"bucket": bucket, "key": key}, f"s3://{bucket}/{key}")
        logger.info("Upload task published | key=%s task_id=%s", key, task_id)
        return task_id

    async def publish_job_completion(self, message: dict[str, Any] | str) -> str:
        from ascribe.workers.tasks import handle_ocr_job_completion

        task_id = await self._apply(handle_ocr_job_completion, {"message": message}, "ocr-completion")
        logger.info("Job completion task published | task_id=%s", task_id)
        return task_id
