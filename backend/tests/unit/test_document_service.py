"""
Unit Tests — Document Service (read, finalize, delete)
══════════════════════════════════════════════════════
Tests for ascribe/services/documents.py

Coverage:
  ✅ get: status-only before extraction, text included once cleaned
  ✅ get_text: 404 until there is extracted text
  ✅ list_documents newest first; file_paths distinct
  ✅ finalize: new verified revision, document verified, old revision dropped, re-indexed
  ✅ finalize keeps confidence and question ids from the superseded record
  ✅ finalize on a missing document → 404 with no writes at all
  ✅ finalize validation happens before any read or write
  ✅ finalize tolerates a failure removing the superseded revision
  ✅ delete cascades to file, text, record, questions, search; second delete → 404
  ✅ finalize and delete succeed when the search domain replies non-JSON or cannot be signed for
  ✅ upload_url requires filename and content type
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from ascribe.core.errors import (
    DocumentNotFoundError,
    ExtractedTextNotFoundError,
    ObjectStoreError,
    PreconditionError,
)
from ascribe.models.documents import Document, DocumentStatus, ExtractedText, Question
from ascribe.services.documents import DocumentService


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def cleaned_document(object_store, document_repo, text_repo, question_repo, user_id):
    """A cleaned document with its original, its text revision and two questions."""
    async def _make(document_id: str = "d1") -> Document:
        final_key = object_store.final_key(user_id, document_id)
        object_store.put_raw("test-bucket", final_key, b"\xff\xd8original", "image/jpeg", {})
        text_key = await object_store.put_text("test-bucket", user_id, document_id, "Cleaned text")
        await text_repo.put(ExtractedText(
            extracted_text_id=text_key,
            document_id=document_id,
            user_id=user_id,
            text_file_key=text_key,
            average_confidence=88.0,
            questions_id=["q1", "q2"],
            tokens=2,
        ))
        for qid in ("q1", "q2"):
            await question_repo.put(Question(
                question_id=qid, document_id=document_id, question="Why?", answer="A", choices=["A", "B"],
            ))
        doc = Document(
            user_id=user_id,
            document_id=document_id,
            file_key=final_key,
            original_filename="notes.jpg",
            content_type="image/jpeg",
            status=DocumentStatus.CLEANED,
            tags=["biology"],
            file_path="science/biology",
            extracted_text_id=text_key,
        )
        await document_repo.put(doc)
        object_store.calls.clear()
        return doc

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestReads:

    async def test_get_without_text(self, document_service, document_repo, user_id):
        await document_repo.put(Document(user_id=user_id, document_id="d1", file_key="temp/k",
                                         status=DocumentStatus.PROCESSING))

        details = await document_service.get(user_id, "d1")

        assert details.document.status == "processing"
        assert details.extracted_text is None
        assert details.text is None

    async def test_get_with_text(self, document_service, cleaned_document, user_id):
        await cleaned_document()

        details = await document_service.get(user_id, "d1")

        assert details.text == "Cleaned text"
        assert details.extracted_text.average_confidence == 88.0

    async def test_get_other_users_document_is_404(self, document_service, cleaned_document):
        await cleaned_document()

        with pytest.raises(DocumentNotFoundError):
            await document_service.get("someone-else", "d1")

    async def test_get_text_before_extraction(self, document_service, document_repo, user_id):
        await document_repo.put(Document(user_id=user_id, document_id="d1", file_key="temp/k"))

        with pytest.raises(ExtractedTextNotFoundError):
            await document_service.get_text(user_id, "d1")

    async def test_get_text(self, document_service, cleaned_document, user_id):
        doc = await cleaned_document()

        record, text = await document_service.get_text(user_id, "d1")

        assert record.extracted_text_id == doc.extracted_text_id
        assert text == "Cleaned text"

    async def test_list_newest_first(self, document_service, document_repo, user_id):
        await document_repo.put(Document(user_id=user_id, document_id="old", file_key="k",
                                         upload_date="2024-01-01T00:00:00+00:00"))
        await document_repo.put(Document(user_id=user_id, document_id="new", file_key="k",
                                         upload_date="2024-06-01T00:00:00+00:00"))

        docs = await document_service.list_documents(user_id)

        assert [d.document_id for d in docs] == ["new", "old"]

    async def test_upload_url_requires_fields(self, document_service, user_id):
        with pytest.raises(PreconditionError) as exc_info:
            await document_service.upload_url(user_id, "d1", "", "image/png")
        assert exc_info.value.field == "filename"

        with pytest.raises(PreconditionError) as exc_info:
            await document_service.upload_url(user_id, "d1", "a.png", "")
        assert exc_info.value.field == "contentType"

    async def test_download_url_points_at_original(self, document_service, cleaned_document, user_id):
        doc = await cleaned_document()

        presigned = await document_service.download_url(user_id, "d1")

        assert presigned.key == doc.file_key
        assert presigned.method == "GET"


# ─────────────────────────────────────────────────────────────────────────────
# Finalize
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestFinalize:

    async def test_finalize_creates_verified_revision(
        self, document_service, cleaned_document, object_store, text_repo, document_repo, mock_search, user_id,
    ):
        old = await cleaned_document()

        details = await document_service.finalize(
            user_id, "d1", "Edited text", "/science/botany/", ["botany", " plants ", "botany"],
        )

        doc = await document_repo.require(user_id, "d1")
        assert doc.status == "verified"
        assert doc.file_path == "science/botany"
        assert doc.tags == ["botany", "plants"]
        assert doc.extracted_text_id != old.extracted_text_id
        assert doc.extracted_text_id == details.extracted_text.extracted_text_id

        record = await text_repo.require(doc.extracted_text_id, "d1")
        assert record.verified is True
        assert record.average_confidence == 88.0
        assert record.questions_id == ["q1", "q2"]
        assert await object_store.get_text("test-bucket", record.text_file_key) == "Edited text"

        assert await text_repo.get(old.extracted_text_id, "d1") is None
        assert not await object_store.exists("test-bucket", old.extracted_text_id)

        body = mock_search.index_best_effort.call_args.args[1]
        assert body["status"] == "verified"
        assert body["text"] == "Edited text"

    async def test_finalize_missing_document_writes_nothing(
        self, document_service, object_store, record_store, user_id,
    ):
        with pytest.raises(DocumentNotFoundError):
            await document_service.finalize(user_id, "nope", "text", "a/b", ["t"])

        assert object_store.mutations == []
        assert record_store.writes == []

    @pytest.mark.parametrize("text, path, field", [
        ("",      "a/b", "finalizedText"),
        ("   ",   "a/b", "finalizedText"),
        ("text",  "",    "filePath"),
    ])
    async def test_finalize_validation_precedes_io(
        self, document_service, record_store, text, path, field, user_id,
    ):
        with pytest.raises(PreconditionError) as exc_info:
            await document_service.finalize(user_id, "d1", text, path, [])

        assert exc_info.value.field == field
        assert record_store.calls == []

    async def test_finalize_before_extraction_rejected(self, document_service, document_repo, object_store, user_id):
        await document_repo.put(Document(user_id=user_id, document_id="d1", file_key="temp/k",
                                         status=DocumentStatus.PROCESSING))

        with pytest.raises(PreconditionError):
            await document_service.finalize(user_id, "d1", "text", "a/b", [])

        assert object_store.mutations == []

    async def test_old_revision_cleanup_failure_is_tolerated(
        self, document_service, cleaned_document, object_store, document_repo, user_id,
    ):
        await cleaned_document()
        original_delete = object_store.delete

        async def _flaky_delete(bucket, key):
            if key.startswith("extracted-texts/"):
                raise ObjectStoreError("delete", key)
            return await original_delete(bucket, key)

        with patch.object(object_store, "delete", new=AsyncMock(side_effect=_flaky_delete)):
            details = await document_service.finalize(user_id, "d1", "Edited", "a/b", [])

        assert details.document.status == "verified"
        assert (await document_repo.require(user_id, "d1")).status == "verified"

    async def test_finalize_twice(self, document_service, cleaned_document, text_repo, user_id):
        await cleaned_document()

        await document_service.finalize(user_id, "d1", "First edit", "a/b", ["x"])
        second = await document_service.finalize(user_id, "d1", "Second edit", "a/c", ["y"])

        assert second.text == "Second edit"
        assert second.document.file_path == "a/c"
        assert (await text_repo.require(second.extracted_text.extracted_text_id, "d1")).verified


# ─────────────────────────────────────────────────────────────────────────────
# Delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestDelete:

    async def test_delete_cascades(
        self, document_service, cleaned_document, object_store, document_repo, text_repo, question_repo,
        mock_search, user_id,
    ):
        doc = await cleaned_document()

        await document_service.delete(user_id, "d1")

        assert object_store.objects == {}
        assert await document_repo.get(user_id, "d1") is None
        assert await text_repo.get(doc.extracted_text_id, "d1") is None
        assert await question_repo.list_for_document("d1") == []
        mock_search.delete_best_effort.assert_awaited_once_with("d1")

    async def test_second_delete_is_404(self, document_service, cleaned_document, user_id):
        await cleaned_document()
        await document_service.delete(user_id, "d1")

        with pytest.raises(DocumentNotFoundError):
            await document_service.delete(user_id, "d1")

    async def test_delete_without_text(self, document_service, document_repo, object_store, user_id):
        object_store.put_raw("test-bucket", "temp/u/d1-a.png", b"x", "image/png", {})
        await document_repo.put(Document(user_id=user_id, document_id="d1", file_key="temp/u/d1-a.png",
                                         status=DocumentStatus.FAILED))

        await document_service.delete(user_id, "d1")

        assert object_store.objects == {}
        assert await document_repo.get(user_id, "d1") is None

    async def test_delete_leaves_other_documents(self, document_service, cleaned_document, document_repo, user_id):
        await cleaned_document("d1")
        await cleaned_document("d2")

        await document_service.delete(user_id, "d1")

        assert await document_repo.get(user_id, "d2") is not None


# ─────────────────────────────────────────────────────────────────────────────
# Search outage
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSearchOutage:
    """A real SearchIndexer against a domain that answers garbage or cannot be signed for."""

    @pytest.fixture
    def service(self, settings, object_store, document_repo, text_repo, question_repo, unreliable_search):
        return DocumentService(settings, object_store, document_repo, text_repo, question_repo, unreliable_search)

    async def test_finalize_still_verifies(self, service, cleaned_document, document_repo, text_repo, user_id):
        await cleaned_document()

        details = await service.finalize(user_id, "d1", "Edited text", "science/botany", ["botany"])

        assert details.document.status == "verified"
        doc = await document_repo.require(user_id, "d1")
        assert doc.status == "verified"
        record = await text_repo.require(doc.extracted_text_id, "d1")
        assert record.verified is True

    async def test_delete_still_cascades(
        self, service, cleaned_document, object_store, document_repo, text_repo, question_repo, user_id,
    ):
        doc = await cleaned_document()

        await service.delete(user_id, "d1")

        assert object_store.objects == {}
        assert await document_repo.get(user_id, "d1") is None
        assert await text_repo.get(doc.extracted_text_id, "d1") is None
        assert await question_repo.list_for_document("d1") == []
