"""
Question API Router

  POST /users/{userId}/documents/{documentId}/questions   generate (201)
  GET  /documents/{documentId}/questions                  list, caller's documents only
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from ascribe.api.dependencies import CurrentUser, OwnerId, Questions
from ascribe.schemas.documents import (
    ErrorResponse,
    GenerateQuestionsRequest,
    QuestionListResponse,
    QuestionView,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Questions"])


@router.post(
    "/users/{userId}/documents/{documentId}/questions",
    response_model=QuestionListResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
    summary="Generate multiple-choice questions from the document text",
    responses={
        400: {"model": ErrorResponse, "description": "numQuestions outside 1-10"},
        404: {"model": ErrorResponse, "description": "Document or extracted text not found"},
        409: {"model": ErrorResponse, "description": "Document is not cleaned or verified"},
        502: {"model": ErrorResponse, "description": "Model unavailable or returned invalid JSON"},
    },
)
async def generate_questions(
    user_id:    OwnerId,
    documentId: str,
    payload:    GenerateQuestionsRequest,
    questions:  Questions,
) -> QuestionListResponse:
    created = await questions.generate(user_id, documentId, payload.num_questions)
    return QuestionListResponse(
        document_id=documentId,
        questions=[QuestionView.from_record(q) for q in created],
    )


@router.get(
    "/documents/{documentId}/questions",
    response_model=QuestionListResponse,
    response_model_by_alias=True,
    summary="Questions generated for a document",
    responses={404: {"model": ErrorResponse, "description": "Document not found"}},
)
async def list_questions(documentId: str, user: CurrentUser, questions: Questions) -> QuestionListResponse:
    # Scoped to the caller: another user's document is a 404
    items = await questions.list(user.user_id, documentId)
    return QuestionListResponse(
        document_id=documentId,
        questions=[QuestionView.from_record(q) for q in items],
    )
