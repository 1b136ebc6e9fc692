"""
Question generation from a document's current extracted text.

Checks run cheapest-first so that a bad request never reaches Bedrock:
range → Document → status → ExtractedText record → non-blank text.
"""

from __future__ import annotations

import logging
import time
import uuid

from ascribe.core.config import Settings
from ascribe.core.errors import (
    ExtractedTextNotFoundError,
    InvalidStateError,
    PreconditionError,
)
from ascribe.llm.questions import QuestionGenerator
from ascribe.models.documents import QUESTION_READY_STATUSES, Question
from ascribe.records.repositories import (
    DocumentRepository,
    ExtractedTextRepository,
    QuestionRepository,
)
from ascribe.storage.s3 import ObjectStoreGateway

logger = logging.getLogger(__name__)

MIN_QUESTIONS = 1
MAX_QUESTIONS = 10


def new_question_id(index: int) -> str:
    """Unique within a millisecond: timestamp + batch index + random suffix."""
    return f"q_{int(time.time() * 1000)}_{index}_{uuid.uuid4().hex[:8]}"


class QuestionService:
    def __init__(
        self,
        settings: Settings,
        objects: ObjectStoreGateway,
        documents: DocumentRepository,
        texts: ExtractedTextRepository,
        questions: QuestionRepository,
        generator: QuestionGenerator,
    ) -> None:
        self._bucket = settings.documents_bucket
        self._objects = objects
        self._documents = documents
        self._texts = texts
        self._questions = questions
        self._generator = generator

    async def generate(self, user_id: str, document_id: str, num_questions: int) -> list[Question]:
        if (
            not isinstance(num_questions, int)
            or isinstance(num_questions, bool)
            or not MIN_QUESTIONS <= num_questions <= MAX_QUESTIONS
        ):
            raise PreconditionError(
                f"numQuestions must be an integer between {MIN_QUESTIONS} and {MAX_QUESTIONS}.",
                field="numQuestions",
            )

        doc = await self._documents.require(user_id, document_id)
        if doc.status not in QUESTION_READY_STATUSES or not doc.extracted_text_id:
            raise InvalidStateError(
                f"Document '{document_id}' is '{doc.status}'; questions need a cleaned or verified document.",
                field="status",
            )

        record = await self._texts.require(doc.extracted_text_id, document_id)
        text = await self._objects.get_text(self._bucket, record.text_file_key)
        if not text.strip():
            raise ExtractedTextNotFoundError(f"Extracted text for document '{document_id}' is empty.")

        generated = await self._generator.generate(text, num_questions)

        created: list[Question] = []
        for i, item in enumerate(generated):
            question = Question(
                question_id=new_question_id(i),
                document_id=document_id,
                tags=item.tags,
                question=item.question,
                choices=item.choices,
                answer=item.answer,
            )
            await self._questions.put(question)
            created.append(question)

        await self._texts.update(
            record.extracted_text_id,
            document_id,
            questions_id=sorted(set(record.questions_id) | {q.question_id for q in created}),
        )

        logger.info(
            "Questions generated | user=%s doc=%s requested=%d created=%d",
            user_id, document_id, num_questions, len(created),
        )
        return created

    async def list(self, user_id: str, document_id: str) -> list[Question]:
        await self._documents.require(user_id, document_id)
        return await self._questions.list_for_document(document_id)
