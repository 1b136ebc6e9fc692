"""
Composed FastAPI Dependencies

Route handlers import from here, never from auth/token or the service
registry directly. Tests swap any of these through
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from ascribe.auth.token import TokenPayload, get_current_user
from ascribe.core.config import Settings, get_settings
from ascribe.services.documents import DocumentService
from ascribe.services.pipeline import DocumentPipeline
from ascribe.services.questions import QuestionService
from ascribe.services.registry import get_services
from ascribe.search.opensearch import SearchIndexer
from ascribe.workers.publisher import TaskPublisher


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def get_pipeline() -> DocumentPipeline:
    return get_services().pipeline


def get_document_service() -> DocumentService:
    return get_services().documents


def get_question_service() -> QuestionService:
    return get_services().questions


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


def get_search_indexer() -> SearchIndexer:
    return get_services().search


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------

def require_owner(user: TokenPayload, user_id: str) -> str:
    """A path ``{userId}`` must be the caller's own verified id."""
    if user.user_id != user_id:
        raise HTTPException(
            status.HTTP_403_FORBIDDEN,
            detail="You may only access your own documents.",
        )
    return user_id


async def owner_user_id(
    userId: str,
    user: Annotated[TokenPayload, Depends(get_current_user)],
) -> str:
    return require_owner(user, userId)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

AppSettings = Annotated[Settings,         Depends(get_settings)]
CurrentUser = Annotated[TokenPayload,     Depends(get_current_user)]
OwnerId     = Annotated[str,              Depends(owner_user_id)]
Pipeline    = Annotated[DocumentPipeline, Depends(get_pipeline)]
Documents   = Annotated[DocumentService,  Depends(get_document_service)]
Questions   = Annotated[QuestionService,  Depends(get_question_service)]
Search      = Annotated[SearchIndexer,    Depends(get_search_indexer)]
Publisher   = Annotated[TaskPublisher,    Depends(get_task_publisher)]
