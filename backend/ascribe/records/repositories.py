"""
Typed repositories over RecordStoreGateway.

Each repository binds one table and one record model; services never build
attribute dicts by hand.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ascribe.core.config import Settings
from ascribe.core.errors import DocumentNotFoundError, ExtractedTextNotFoundError
from ascribe.models.documents import Document, DocumentStatus, ExtractedText, Question, utc_now_iso
from ascribe.records.dynamodb import RecordStoreGateway

logger = logging.getLogger(__name__)


class DocumentRepository:
    def __init__(self, gateway: RecordStoreGateway, settings: Settings) -> None:
        self._gw = gateway
        self._table = settings.documents_table
        self._job_tag_index = settings.documents_job_tag_index

    @staticmethod
    def _key(user_id: str, document_id: str) -> dict[str, str]:
        return {"userId": user_id, "documentId": document_id}

    async def get(self, user_id: str, document_id: str) -> Document | None:
        item = await self._gw.get(self._table, self._key(user_id, document_id))
        return Document.from_item(item) if item else None

    async def require(self, user_id: str, document_id: str) -> Document:
        doc = await self.get(user_id, document_id)
        if doc is None:
            raise DocumentNotFoundError(user_id, document_id)
        return doc

    async def put(self, document: Document) -> None:
        await self._gw.put(self._table, document.to_item())

    async def update(
        self,
        user_id: str,
        document_id: str,
        remove: Iterable[str] = (),
        only_if_status: Iterable[DocumentStatus] = (),
        **fields: Any,
    ) -> bool:
        """
        Sparse update with snake_case field names. ``remove`` takes snake_case
        names too. ``updated_at`` is stamped only when something else changes.
        Never creates a document: a missing one raises NotFoundError.

        ``only_if_status`` makes the write conditional on the stored status;
        a document already moved on raises InvalidStateError.
        """
        changes = Document.changes(**fields)
        removed = [Document.attribute(name) for name in remove]
        if any(v is not None for v in changes.values()) or removed:
            changes[Document.attribute("updated_at")] = utc_now_iso()
        allowed = [DocumentStatus(s).value for s in only_if_status]
        return await self._gw.update(
            self._table,
            self._key(user_id, document_id),
            changes,
            removed,
            require_existing=True,
            only_if={Document.attribute("status"): allowed} if allowed else None,
        )

    async def delete(self, user_id: str, document_id: str) -> bool:
        return await self._gw.delete(self._table, self._key(user_id, document_id))

    async def list_for_user(self, user_id: str) -> list[Document]:
        items = await self._gw.query(self._table, "userId", user_id)
        return [Document.from_item(item) for item in items]

    async def find_by_job_tag(self, job_tag: str) -> list[Document]:
        items = await self._gw.query(self._table, "jobTag", job_tag, index_name=self._job_tag_index)
        return [Document.from_item(item) for item in items]

    async def file_paths(self, user_id: str) -> list[str]:
        """Distinct non-empty file paths already used by the user, sorted."""
        docs = await self.list_for_user(user_id)
        return sorted({d.file_path for d in docs if d.file_path})


class ExtractedTextRepository:
    def __init__(self, gateway: RecordStoreGateway, settings: Settings) -> None:
        self._gw = gateway
        self._table = settings.extracted_texts_table

    @staticmethod
    def _key(extracted_text_id: str, document_id: str) -> dict[str, str]:
        return {"extractedTextId": extracted_text_id, "documentId": document_id}

    async def get(self, extracted_text_id: str, document_id: str) -> ExtractedText | None:
        item = await self._gw.get(self._table, self._key(extracted_text_id, document_id))
        return ExtractedText.from_item(item) if item else None

    async def require(self, extracted_text_id: str, document_id: str) -> ExtractedText:
        record = await self.get(extracted_text_id, document_id)
        if record is None:
            raise ExtractedTextNotFoundError(
                f"Extracted text '{extracted_text_id}' not found for document '{document_id}'."
            )
        return record

    async def put(self, record: ExtractedText) -> None:
        await self._gw.put(self._table, record.to_item())

    async def update(self, extracted_text_id: str, document_id: str, **fields: Any) -> bool:
        return await self._gw.update(
            self._table,
            self._key(extracted_text_id, document_id),
            ExtractedText.changes(**fields),
            require_existing=True,
        )

    async def delete(self, extracted_text_id: str, document_id: str) -> bool:
        return await self._gw.delete(self._table, self._key(extracted_text_id, document_id))


class QuestionRepository:
    def __init__(self, gateway: RecordStoreGateway, settings: Settings) -> None:
        self._gw = gateway
        self._table = settings.questions_table

    async def put(self, question: Question) -> None:
        await self._gw.put(self._table, question.to_item())

    async def list_for_document(self, document_id: str) -> list[Question]:
        items = await self._gw.query(self._table, "documentId", document_id)
        questions = [Question.from_item(item) for item in items]
        return sorted(questions, key=lambda q: (q.created_at, q.question_id))

    async def delete_for_document(self, document_id: str) -> int:
        """Delete every question of a document. Returns the number removed."""
        removed = 0
        for question in await self.list_for_document(document_id):
            if await self._gw.delete(
                self._table,
                {"documentId": document_id, "questionId": question.question_id},
            ):
                removed += 1
        logger.info("Questions deleted | doc=%s count=%d", document_id, removed)
        return removed
