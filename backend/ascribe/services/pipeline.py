"""
Document Processing Pipeline

Drives a Document from upload to ``cleaned``:

  Upload (API upload or object-created event)
    1. Read upload metadata (content type, size, owner, documentId)
    2. Persist / load the Document in ``temp``
    3. Choose the path
         sync   content type ∈ {jpeg, png, pdf} and size ≤ 5 MiB
         async  anything else
    4a. sync  → OCR inline → finish (below) → result returned to caller
    4b. async → start Textract job tagged with the document → status
                ``processing`` → return; the completion message resumes it

  Finish (shared by sync and the async completion)
    5. Load the user's existing file paths (prompt context)
    6. Clean + tag with the LLM
    7. Upload the cleaned text (fresh revision key)
    8. Move the original temp → final key
    9. Persist the ExtractedText record
   10. Update the Document (fileKey, filePath, tags, status=cleaned, extractedTextId)
   11. Index for search (best-effort)

Failure handling:
  Any exception in 3–10 or in the completion handler marks the Document
  ``failed`` (removing extractedTextId) and is then re-raised unchanged so
  the transport (HTTP response / Celery retry) sees the original error.
  A failure while recording ``failed`` is logged and does not replace the
  original error.

Idempotency:
  - object-created events for uploads already handled inline (trigger=api)
    are skipped
  - upload events for documents past ``temp`` / ``failed`` are skipped
  - completion messages for documents already ``cleaned`` / ``verified``, or
    for a job id other than the document's current one, are skipped
  - the temp → final move tolerates a source that is already gone when the
    final object exists
  - ``processing`` is written only while the document is still ``temp`` /
    ``failed``, so a completion that lands first is not overwritten
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from ascribe.core.config import Settings
from ascribe.core.errors import (
    DocumentNotFoundError,
    InvalidStateError,
    NotFoundError,
    ObjectNotFoundError,
    PipelineFailure,
    PreconditionError,
)
from ascribe.models.documents import Document, DocumentStatus, ExtractedText, ExtractionMethod
from ascribe.processing.job_tag import JobTagResolver
from ascribe.processing.ocr import JobCompletion, OCRResult, TextractClient
from ascribe.llm.cleanup import TextCleanupClient
from ascribe.records.repositories import DocumentRepository, ExtractedTextRepository
from ascribe.search.opensearch import SearchIndexer
from ascribe.storage.s3 import ObjectStoreGateway

logger = logging.getLogger(__name__)

_REPROCESSABLE = frozenset({DocumentStatus.TEMP.value, DocumentStatus.FAILED.value})
_FINISHED = frozenset({DocumentStatus.CLEANED.value, DocumentStatus.VERIFIED.value})
_FAILURE_REASON_CHARS = 500


@dataclass
class ProcessingOutcome:
    """What one pipeline invocation did. Returned to the API and to Celery."""
    user_id:             str
    document_id:         str
    status:              str
    method:              str | None = None
    job_id:              str | None = None
    cleaned_text:        str | None = None
    tags:                list[str] = field(default_factory=list)
    suggested_file_path: str | None = None
    extracted_text_id:   str | None = None
    average_confidence:  float | None = None
    skipped:             bool = False
    reason:              str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId":               self.user_id,
            "documentId":           self.document_id,
            "status":               self.status,
            "textExtractionMethod": self.method,
            "jobId":                self.job_id,
            "cleanedText":          self.cleaned_text,
            "tags":                 self.tags,
            "suggestedFilePath":    self.suggested_file_path,
            "extractedTextId":      self.extracted_text_id,
            "averageConfidence":    self.average_confidence,
            "skipped":              self.skipped,
            "reason":               self.reason,
        }


def count_tokens(text: str) -> int:
    return len(text.split())


class DocumentPipeline:
    def __init__(
        self,
        settings: Settings,
        objects: ObjectStoreGateway,
        documents: DocumentRepository,
        texts: ExtractedTextRepository,
        ocr: TextractClient,
        cleanup: TextCleanupClient,
        search: SearchIndexer,
        resolver: JobTagResolver | None = None,
    ) -> None:
        self._settings = settings
        self._objects = objects
        self._documents = documents
        self._texts = texts
        self._ocr = ocr
        self._cleanup = cleanup
        self._search = search
        self._resolver = resolver or JobTagResolver(objects, documents)

    # ------------------------------------------------------------------
    # Path selection
    # ------------------------------------------------------------------

    def choose_path(self, content_type: str, file_size: int) -> ExtractionMethod:
        base_type = (content_type or "").split(";", 1)[0].strip().lower()
        if (
            base_type in self._settings.sync_content_types
            and file_size <= self._settings.max_sync_file_size_bytes
        ):
            return ExtractionMethod.SYNC
        return ExtractionMethod.ASYNC

    # ------------------------------------------------------------------
    # Entry point 1a: upload through the API
    # ------------------------------------------------------------------

    async def ingest_upload(
        self,
        user_id: str,
        body: bytes,
        content_type: str,
        original_name: str,
    ) -> ProcessingOutcome:
        """Store the bytes, persist a ``temp`` Document, then process inline."""
        if not user_id:
            raise PreconditionError("'user_id' is required.", field="user_id")
        if not body:
            raise PreconditionError("The uploaded file is empty.", field="file")
        if len(body) > self._settings.max_upload_size_bytes:
            raise PreconditionError(
                f"File exceeds the {self._settings.max_upload_size_bytes} byte limit.",
                field="file",
            )

        bucket = self._settings.documents_bucket
        document_id = str(uuid.uuid4())

        # ---- Step 1: temp object ----
        key = await self._objects.put_temp(
            bucket, user_id, body, content_type, original_name, document_id, trigger="api",
        )

        # ---- Step 2: temp Document ----
        doc = Document(
            user_id=user_id,
            document_id=document_id,
            file_key=key,
            original_filename=original_name,
            content_type=content_type,
            file_size=len(body),
        )
        await self._documents.put(doc)
        logger.info(
            "Upload accepted | user=%s doc=%s type=%s size=%d",
            user_id, document_id, content_type, len(body),
        )

        return await self._extract(doc, bucket, body=body)

    # ------------------------------------------------------------------
    # Entry point 1b: object-created event on the temp prefix
    # ------------------------------------------------------------------

    async def handle_upload(self, bucket: str, key: str) -> ProcessingOutcome | None:
        if not bucket or not key:
            raise PreconditionError("Upload event requires bucket and key.")
        if not self._objects.is_temp_key(key):
            logger.info("Upload event ignored, not a temp key | key=%s", key)
            return None

        meta = await self._objects.head(bucket, key)
        if meta.trigger == "api":
            logger.info("Upload event skipped, processed inline | key=%s", key)
            return None
        if not meta.document_id:
            raise PreconditionError(f"Object {key} has no 'document-id' metadata.")

        doc = await self._documents.get(meta.user_id, meta.document_id)
        if doc is None:
            doc = Document(
                user_id=meta.user_id,
                document_id=meta.document_id,
                file_key=key,
                original_filename=meta.original_filename,
                content_type=meta.content_type,
                file_size=meta.file_size,
            )
            await self._documents.put(doc)
        elif doc.status not in _REPROCESSABLE:
            logger.info(
                "Upload event skipped, already %s | user=%s doc=%s",
                doc.status, doc.user_id, doc.document_id,
            )
            return ProcessingOutcome(
                user_id=doc.user_id, document_id=doc.document_id, status=doc.status,
                skipped=True, reason=f"document already {doc.status}",
            )

        return await self._extract(doc, bucket)

    # ------------------------------------------------------------------
    # Path dispatch
    # ------------------------------------------------------------------

    async def _extract(self, doc: Document, bucket: str, body: bytes | None = None) -> ProcessingOutcome:
        method = self.choose_path(doc.content_type, doc.file_size)
        try:
            if method is ExtractionMethod.SYNC:
                # ---- Step 3a: inline OCR ----
                if body is None:
                    body = await self._objects.get(bucket, doc.file_key)
                ocr = await self._ocr.extract_sync(body)
                return await self._finish(doc, bucket, ocr, method)

            # ---- Step 3b: async OCR job ----
            job = await self._ocr.extract_async(
                bucket,
                doc.file_key,
                doc.user_id,
                doc.document_id,
                self._settings.textract_sns_topic_arn,
                self._settings.textract_role_arn,
            )
            try:
                await self._documents.update(
                    doc.user_id,
                    doc.document_id,
                    only_if_status=_REPROCESSABLE,
                    status=DocumentStatus.PROCESSING,
                    text_extraction_method=ExtractionMethod.ASYNC,
                    textract_job_id=job.job_id,
                    job_tag=job.job_tag,
                )
            except InvalidStateError:
                # the completion notification got here first
                current = await self._documents.require(doc.user_id, doc.document_id)
                logger.info(
                    "Async job finished before it was recorded | user=%s doc=%s job=%s status=%s",
                    doc.user_id, doc.document_id, job.job_id, current.status,
                )
                return ProcessingOutcome(
                    user_id=doc.user_id,
                    document_id=doc.document_id,
                    status=current.status,
                    method=ExtractionMethod.ASYNC.value,
                    job_id=job.job_id,
                    extracted_text_id=current.extracted_text_id,
                    skipped=True,
                    reason=f"document already {current.status}",
                )
            logger.info(
                "Async extraction started | user=%s doc=%s job=%s",
                doc.user_id, doc.document_id, job.job_id,
            )
            return ProcessingOutcome(
                user_id=doc.user_id,
                document_id=doc.document_id,
                status=DocumentStatus.PROCESSING.value,
                method=ExtractionMethod.ASYNC.value,
                job_id=job.job_id,
            )
        except Exception as exc:
            await self._mark_failed(doc.user_id, doc.document_id, exc)
            raise

    # ------------------------------------------------------------------
    # Entry point 2: async OCR job completion
    # ------------------------------------------------------------------

    async def handle_job_completion(self, message: dict[str, Any] | str) -> ProcessingOutcome | None:
        """
        Raises:
            PreconditionError: malformed message / job tag (not retryable)
            NotFoundError:     no Document matches the tag (not retryable)
            PipelineFailure:   the job itself failed; Document is now ``failed``
        """
        notice = JobCompletion.from_message(message)
        user_id, document_id = await self._resolver.resolve(notice.job_tag, notice.bucket, notice.key)
        logger.info(
            "Job completion | job=%s status=%s user=%s doc=%s",
            notice.job_id, notice.status, user_id, document_id,
        )

        try:
            doc = await self._documents.require(user_id, document_id)

            if doc.status in _FINISHED:
                logger.info("Job completion skipped, already %s | doc=%s job=%s", doc.status, document_id, notice.job_id)
                return ProcessingOutcome(
                    user_id=user_id, document_id=document_id, status=doc.status,
                    method=ExtractionMethod.ASYNC.value, job_id=notice.job_id,
                    extracted_text_id=doc.extracted_text_id, skipped=True, reason="duplicate completion",
                )
            if doc.textract_job_id and doc.textract_job_id != notice.job_id:
                logger.warning(
                    "Job completion skipped, superseded | doc=%s job=%s current=%s",
                    document_id, notice.job_id, doc.textract_job_id,
                )
                return ProcessingOutcome(
                    user_id=user_id, document_id=document_id, status=doc.status,
                    job_id=notice.job_id, skipped=True, reason="superseded job",
                )

            if not notice.succeeded:
                raise PipelineFailure(f"OCR job {notice.job_id} finished with status {notice.status}.")

            # ---- Step 4: fetch full job results ----
            ocr = await self._ocr.get_async_result(notice.job_id)
            if not ocr.succeeded:
                raise PipelineFailure(f"OCR job {notice.job_id} results report status {ocr.status}.")

            bucket = notice.bucket or self._settings.documents_bucket
            return await self._finish(doc, bucket, ocr, ExtractionMethod.ASYNC, job_id=notice.job_id)
        except DocumentNotFoundError:
            logger.error("Job completion for unknown document | job=%s doc=%s", notice.job_id, document_id)
            raise
        except Exception as exc:
            await self._mark_failed(user_id, document_id, exc)
            raise

    # ------------------------------------------------------------------
    # Shared finish
    # ------------------------------------------------------------------

    async def _finish(
        self,
        doc: Document,
        bucket: str,
        ocr: OCRResult,
        method: ExtractionMethod,
        job_id: str | None = None,
    ) -> ProcessingOutcome:
        # ---- Step 5: prompt context ----
        file_paths = await self._documents.file_paths(doc.user_id)

        # ---- Step 6: clean + tag ----
        cleaned = await self._cleanup.clean(ocr.text, file_paths, ocr.confidence)

        # ---- Step 7: cleaned text object ----
        text_key = await self._objects.put_text(bucket, doc.user_id, doc.document_id, cleaned.cleaned_text)

        # ---- Step 8: temp → final ----
        final_key = await self._move_to_final(bucket, doc)

        # ---- Step 9: ExtractedText record ----
        await self._texts.put(ExtractedText(
            extracted_text_id=text_key,
            document_id=doc.document_id,
            user_id=doc.user_id,
            text_file_key=text_key,
            average_confidence=ocr.confidence,
            tokens=count_tokens(cleaned.cleaned_text),
        ))

        # ---- Step 10: Document → cleaned ----
        await self._documents.update(
            doc.user_id,
            doc.document_id,
            remove=("failure_reason",),
            file_key=final_key,
            file_path=cleaned.suggested_file_path or None,
            tags=cleaned.tags,
            status=DocumentStatus.CLEANED,
            extracted_text_id=text_key,
            text_extraction_method=method,
        )

        # ---- Step 11: search (best-effort) ----
        await self._search.index_best_effort(doc.document_id, {
            "userId":           doc.user_id,
            "documentId":       doc.document_id,
            "text":             cleaned.cleaned_text,
            "tags":             cleaned.tags,
            "filePath":         cleaned.suggested_file_path,
            "originalFilename": doc.original_filename,
            "contentType":      doc.content_type,
            "status":           DocumentStatus.CLEANED.value,
        })

        logger.info(
            "Document cleaned | user=%s doc=%s method=%s confidence=%.1f tags=%d",
            doc.user_id, doc.document_id, method.value, ocr.confidence, len(cleaned.tags),
        )
        return ProcessingOutcome(
            user_id=doc.user_id,
            document_id=doc.document_id,
            status=DocumentStatus.CLEANED.value,
            method=method.value,
            job_id=job_id,
            cleaned_text=cleaned.cleaned_text,
            tags=cleaned.tags,
            suggested_file_path=cleaned.suggested_file_path,
            extracted_text_id=text_key,
            average_confidence=ocr.confidence,
        )

    async def _move_to_final(self, bucket: str, doc: Document) -> str:
        if not self._objects.is_temp_key(doc.file_key):
            return doc.file_key
        try:
            return await self._objects.move_temp_to_final(bucket, doc.user_id, doc.document_id, doc.file_key)
        except ObjectNotFoundError:
            final_key = self._objects.final_key(doc.user_id, doc.document_id)
            if await self._objects.exists(bucket, final_key):
                logger.info("Temp object already moved | doc=%s key=%s", doc.document_id, final_key)
                return final_key
            raise

    async def _mark_failed(self, user_id: str, document_id: str, cause: BaseException) -> None:
        """Best-effort transition to ``failed``; never raises."""
        try:
            await self._documents.update(
                user_id,
                document_id,
                remove=("extracted_text_id",),
                status=DocumentStatus.FAILED,
                failure_reason=f"{type(cause).__name__}: {cause}"[:_FAILURE_REASON_CHARS],
            )
        except NotFoundError:
            logger.error("Cannot mark failed, document missing | user=%s doc=%s", user_id, document_id)
        except Exception:
            logger.exception(
                "Recording failure failed | user=%s doc=%s original=%r",
                user_id, document_id, cause,
            )
        else:
            logger.warning(
                "Document failed | user=%s doc=%s error=%s",
                user_id, document_id, cause,
            )
