"""
AWS Textract OCR Client
═══════════════════════

Two extraction paths, same normalized output:

  Sync   DetectDocumentText(Document.Bytes)
         Small JPEG / PNG / single-file PDF, answered within the request.

  Async  StartDocumentTextDetection(DocumentLocation.S3Object)
         Any size. Textract publishes a completion message to the SNS topic
         given in NotificationChannel; GetDocumentTextDetection then pages
         through the results with NextToken.

Normalization:
  text        LINE blocks in reading order, joined with "\\n"
  confidence  mean LINE confidence, 0–100 (0.0 when there are no lines)
  page_count  DocumentMetadata.Pages

boto3 is synchronous; every call is pushed to the default thread executor so
the event loop is never blocked. All botocore failures are re-raised as
OCRError with the API name and the job id / object key.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ascribe.core.config import Settings
from ascribe.core.errors import OCRError, PreconditionError
from ascribe.processing.job_tag import encode_job_tag

logger = logging.getLogger(__name__)

JOB_STATUS_SUCCEEDED = "SUCCEEDED"
JOB_STATUS_FAILED    = "FAILED"
JOB_STATUS_PARTIAL   = "PARTIAL_SUCCESS"
JOB_STATUS_RUNNING   = "IN_PROGRESS"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class OCRResult:
    """
    text        : LINE blocks joined with newlines
    confidence  : average LINE confidence on Textract's 0–100 scale
    page_count  : pages Textract reported
    status      : SUCCEEDED for sync calls; the job status for async results
    """
    text:       str
    confidence: float
    page_count: int = 1
    status:     str = JOB_STATUS_SUCCEEDED

    @property
    def succeeded(self) -> bool:
        return self.status == JOB_STATUS_SUCCEEDED


@dataclass(frozen=True)
class AsyncJob:
    job_id:  str
    job_tag: str


@dataclass(frozen=True)
class JobCompletion:
    """Parsed Textract SNS completion message."""
    job_id:  str
    status:  str
    job_tag: str
    bucket:  str | None = None
    key:     str | None = None
    api:     str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JOB_STATUS_SUCCEEDED

    @classmethod
    def from_message(cls, message: dict[str, Any] | str) -> "JobCompletion":
        """
        Accepts the decoded Textract message, its JSON string, or a full
        SNS envelope whose ``Message`` field holds that string.
        """
        try:
            if isinstance(message, str):
                message = json.loads(message)
            if "Message" in message and "JobId" not in message:
                inner = message["Message"]
                message = json.loads(inner) if isinstance(inner, str) else inner
        except json.JSONDecodeError as exc:
            raise PreconditionError(f"Completion message is not valid JSON: {exc.msg}") from exc
        if not isinstance(message, dict):
            raise PreconditionError("Completion message must be a JSON object.")

        job_id = message.get("JobId")
        status = message.get("Status")
        if not job_id or not status:
            raise PreconditionError("Completion message is missing JobId or Status.")

        location = message.get("DocumentLocation") or {}
        return cls(
            job_id=job_id,
            status=status,
            job_tag=message.get("JobTag") or "",
            bucket=location.get("S3Bucket"),
            key=location.get("S3ObjectName"),
            api=message.get("API"),
        )


# ---------------------------------------------------------------------------
# Block parsing
# ---------------------------------------------------------------------------

def parse_blocks(blocks: list[dict[str, Any]], page_count: int | None = None) -> OCRResult:
    lines: list[str] = []
    confidences: list[float] = []
    pages: set[int] = set()

    for block in blocks:
        if block.get("BlockType") != "LINE":
            continue
        lines.append(block.get("Text", ""))
        confidences.append(float(block.get("Confidence", 0.0)))
        pages.add(block.get("Page", 1))

    avg = sum(confidences) / len(confidences) if confidences else 0.0
    return OCRResult(
        text="\n".join(lines),
        confidence=round(avg, 2),
        page_count=page_count or len(pages) or 1,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class TextractClient:
    """
    IAM permissions required on the API / worker role:
      textract:DetectDocumentText
      textract:StartDocumentTextDetection
      textract:GetDocumentTextDetection
      s3:GetObject on the temp prefix
      iam:PassRole for ``textract_role_arn`` (SNS publish)
    """

    def __init__(self, settings: Settings, client=None) -> None:
        self._settings = settings
        self._client = client or boto3.client("textract", region_name=settings.aws_region)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # ------------------------------------------------------------------
    # Sync path
    # ------------------------------------------------------------------

    async def extract_sync(self, image_bytes: bytes) -> OCRResult:
        if not image_bytes:
            raise PreconditionError("Cannot run OCR on an empty file.", field="file")

        t0 = time.monotonic()
        try:
            response = await self._run(self._detect, image_bytes)
        except (ClientError, BotoCoreError) as exc:
            raise OCRError("DetectDocumentText", f"<{len(image_bytes)} bytes>", exc) from exc

        pages = (response.get("DocumentMetadata") or {}).get("Pages")
        result = parse_blocks(response.get("Blocks", []), pages)
        logger.info(
            "Textract sync | pages=%d chars=%d confidence=%.1f elapsed_ms=%.0f",
            result.page_count, len(result.text), result.confidence,
            (time.monotonic() - t0) * 1000,
        )
        return result

    def _detect(self, image_bytes: bytes) -> dict:
        return self._client.detect_document_text(Document={"Bytes": image_bytes})

    # ------------------------------------------------------------------
    # Async path
    # ------------------------------------------------------------------

    async def extract_async(
        self,
        bucket: str,
        key: str,
        user_id: str,
        document_id: str,
        notification_topic: str,
        service_role: str,
    ) -> AsyncJob:
        """
        Start a text-detection job on an S3 object. The completion is
        published to ``notification_topic``; the job carries a tag derived
        from ``(user_id, document_id)``.
        """
        for name, value in (
            ("bucket", bucket), ("key", key),
            ("notification_topic", notification_topic), ("service_role", service_role),
        ):
            if not value:
                raise PreconditionError(f"'{name}' is required to start an OCR job.", field=name)

        job_tag = encode_job_tag(user_id, document_id)
        params = {
            "DocumentLocation":    {"S3Object": {"Bucket": bucket, "Name": key}},
            "JobTag":              job_tag,
            "NotificationChannel": {"SNSTopicArn": notification_topic, "RoleArn": service_role},
        }

        try:
            response = await self._run(lambda: self._client.start_document_text_detection(**params))
        except (ClientError, BotoCoreError) as exc:
            raise OCRError("StartDocumentTextDetection", f"s3://{bucket}/{key}", exc) from exc

        job_id = response.get("JobId")
        if not job_id:
            raise OCRError("StartDocumentTextDetection", f"s3://{bucket}/{key}: no JobId returned")

        logger.info("Textract async job started | job=%s tag=%s key=%s", job_id, job_tag, key)
        return AsyncJob(job_id=job_id, job_tag=job_tag)

    async def get_async_result(self, job_id: str) -> OCRResult:
        """Collect every result page of a finished job."""
        if not job_id:
            raise PreconditionError("'job_id' is required.", field="job_id")

        try:
            return await self._run(self._collect, job_id)
        except (ClientError, BotoCoreError) as exc:
            raise OCRError("GetDocumentTextDetection", f"job {job_id}", exc) from exc

    def _collect(self, job_id: str) -> OCRResult:
        blocks: list[dict] = []
        next_token: str | None = None
        status = JOB_STATUS_RUNNING
        pages: int | None = None

        while True:
            kwargs = {"JobId": job_id}
            if next_token:
                kwargs["NextToken"] = next_token

            response = self._client.get_document_text_detection(**kwargs)
            status = response.get("JobStatus", status)
            if status != JOB_STATUS_SUCCEEDED:
                logger.warning(
                    "Textract job not successful | job=%s status=%s message=%s",
                    job_id, status, response.get("StatusMessage"),
                )
                return OCRResult(text="", confidence=0.0, page_count=0, status=status)

            pages = pages or (response.get("DocumentMetadata") or {}).get("Pages")
            blocks.extend(response.get("Blocks", []))
            next_token = response.get("NextToken")
            if not next_token:
                break

        result = parse_blocks(blocks, pages)
        result.status = status
        logger.info(
            "Textract async result | job=%s pages=%d chars=%d confidence=%.1f",
            job_id, result.page_count, len(result.text), result.confidence,
        )
        return result
