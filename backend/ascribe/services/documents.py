"""
Document lifecycle operations that follow the pipeline: read, finalize,
delete.

Finalize and delete each span S3 and DynamoDB, so neither is atomic. Both
are written as an ordered list of idempotent steps that is safe to retry
from the start:

  finalize
    1. validate; load Document (404 before any write)
    2. upload the finalized text to a fresh revision key
    3. write a verified ExtractedText keyed by that revision
    4. point the Document at it (filePath, tags, status=verified)
    5. drop the superseded ExtractedText record + text object (best-effort)
    6. re-index (best-effort)

  delete
    1. load Document (404 if absent; a second delete is therefore a 404)
    2. delete the original file object
    3. delete the text object + ExtractedText record, if any
    4. delete every Question of the document
    5. delete the Document record
    6. remove from the search index (best-effort)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ascribe.core.config import Settings
from ascribe.core.errors import (
    ExtractedTextNotFoundError,
    PreconditionError,
    RemoteServiceError,
)
from ascribe.models.documents import Document, DocumentStatus, ExtractedText
from ascribe.records.repositories import (
    DocumentRepository,
    ExtractedTextRepository,
    QuestionRepository,
)
from ascribe.search.opensearch import SearchIndexer
from ascribe.services.pipeline import count_tokens
from ascribe.storage.s3 import ObjectStoreGateway, PresignedUrl

logger = logging.getLogger(__name__)


@dataclass
class DocumentDetails:
    document:       Document
    extracted_text: ExtractedText | None = None
    text:           str | None = None


class DocumentService:
    def __init__(
        self,
        settings: Settings,
        objects: ObjectStoreGateway,
        documents: DocumentRepository,
        texts: ExtractedTextRepository,
        questions: QuestionRepository,
        search: SearchIndexer,
    ) -> None:
        self._settings = settings
        self._bucket = settings.documents_bucket
        self._objects = objects
        self._documents = documents
        self._texts = texts
        self._questions = questions
        self._search = search

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: str, document_id: str, include_text: bool = True) -> DocumentDetails:
        """Document plus its extracted text, once there is one."""
        doc = await self._documents.require(user_id, document_id)
        if not doc.extracted_text_id:
            return DocumentDetails(document=doc)

        record = await self._texts.get(doc.extracted_text_id, document_id)
        text = None
        if record is not None and include_text:
            text = await self._objects.get_text(self._bucket, record.text_file_key)
        return DocumentDetails(document=doc, extracted_text=record, text=text)

    async def get_text(self, user_id: str, document_id: str) -> tuple[ExtractedText, str]:
        doc = await self._documents.require(user_id, document_id)
        if not doc.extracted_text_id:
            raise ExtractedTextNotFoundError(
                f"Document '{document_id}' has no extracted text yet (status={doc.status})."
            )
        record = await self._texts.require(doc.extracted_text_id, document_id)
        return record, await self._objects.get_text(self._bucket, record.text_file_key)

    async def list_documents(self, user_id: str) -> list[Document]:
        docs = await self._documents.list_for_user(user_id)
        return sorted(docs, key=lambda d: d.upload_date, reverse=True)

    async def file_paths(self, user_id: str) -> list[str]:
        return await self._documents.file_paths(user_id)

    async def download_url(self, user_id: str, document_id: str) -> PresignedUrl:
        doc = await self._documents.require(user_id, document_id)
        return await self._objects.presigned_get(self._bucket, doc.file_key)

    async def upload_url(
        self,
        user_id: str,
        document_id: str,
        original_name: str,
        content_type: str,
    ) -> PresignedUrl:
        """
        Presigned PUT into the temp namespace. Processing starts from the
        object-created event once the client has uploaded.
        """
        if not original_name:
            raise PreconditionError("'filename' is required.", field="filename")
        if not content_type:
            raise PreconditionError("'contentType' is required.", field="contentType")
        return await self._objects.presigned_put_temp(
            self._bucket, user_id, document_id, original_name, content_type,
        )

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize(
        self,
        user_id: str,
        document_id: str,
        finalized_text: str,
        file_path: str,
        tags: list[str],
    ) -> DocumentDetails:
        # ---- Step 1: validate ----
        if not finalized_text or not finalized_text.strip():
            raise PreconditionError("'finalizedText' is required.", field="finalizedText")
        if not file_path or not file_path.strip():
            raise PreconditionError("'filePath' is required.", field="filePath")
        if tags is None:
            raise PreconditionError("'tags' is required.", field="tags")
        clean_tags = list(dict.fromkeys(t.strip() for t in tags if t and t.strip()))

        doc = await self._documents.require(user_id, document_id)
        if not doc.extracted_text_id:
            raise PreconditionError(
                f"Document '{document_id}' has no extracted text to finalize (status={doc.status}).",
                field="documentId",
            )
        old_id = doc.extracted_text_id
        old = await self._texts.get(old_id, document_id)

        # ---- Step 2: new revision ----
        new_key = await self._objects.put_text(self._bucket, user_id, document_id, finalized_text)

        # ---- Step 3: verified record ----
        record = ExtractedText(
            extracted_text_id=new_key,
            document_id=document_id,
            user_id=user_id,
            verified=True,
            text_file_key=new_key,
            average_confidence=old.average_confidence if old else 0.0,
            summary_id=old.summary_id if old else None,
            questions_id=old.questions_id if old else [],
            tokens=count_tokens(finalized_text),
        )
        await self._texts.put(record)

        # ---- Step 4: Document → verified ----
        await self._documents.update(
            user_id,
            document_id,
            file_path=file_path.strip().strip("/"),
            tags=clean_tags,
            status=DocumentStatus.VERIFIED,
            extracted_text_id=new_key,
        )

        # ---- Step 5: superseded revision ----
        await self._drop_revision(document_id, old_id, old.text_file_key if old else old_id)

        # ---- Step 6: search ----
        updated = await self._documents.require(user_id, document_id)
        await self._search.index_best_effort(document_id, {
            "userId":           user_id,
            "documentId":       document_id,
            "text":             finalized_text,
            "tags":             clean_tags,
            "filePath":         updated.file_path,
            "originalFilename": updated.original_filename,
            "contentType":      updated.content_type,
            "status":           DocumentStatus.VERIFIED.value,
        })

        logger.info("Document finalized | user=%s doc=%s text=%s", user_id, document_id, new_key)
        return DocumentDetails(document=updated, extracted_text=record, text=finalized_text)

    async def _drop_revision(self, document_id: str, record_id: str, text_key: str) -> None:
        """Best-effort: a leftover revision is unreferenced, not inconsistent."""
        try:
            await self._texts.delete(record_id, document_id)
            await self._objects.delete(self._bucket, text_key)
        except RemoteServiceError:
            logger.warning(
                "Superseded text cleanup failed | doc=%s record=%s key=%s",
                document_id, record_id, text_key, exc_info=True,
            )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, user_id: str, document_id: str) -> None:
        # ---- Step 1 ----
        doc = await self._documents.require(user_id, document_id)

        # ---- Step 2: original file ----
        await self._objects.delete(self._bucket, doc.file_key)

        # ---- Step 3: extracted text ----
        if doc.extracted_text_id:
            record = await self._texts.get(doc.extracted_text_id, document_id)
            text_key = record.text_file_key if record else doc.extracted_text_id
            await self._objects.delete(self._bucket, text_key)
            await self._texts.delete(doc.extracted_text_id, document_id)

        # ---- Step 4: questions ----
        removed = await self._questions.delete_for_document(document_id)

        # ---- Step 5: Document ----
        await self._documents.delete(user_id, document_id)

        # ---- Step 6: search ----
        await self._search.delete_best_effort(document_id)

        logger.info("Document deleted | user=%s doc=%s questions=%d", user_id, document_id, removed)
