"""
Search API Router

  GET /search?q=...&size=&offset=   full-text search over the caller's documents

The index is a side channel: when it is unreachable the route answers with
an empty, ``degraded`` result rather than an error.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from ascribe.api.dependencies import CurrentUser, Search
from ascribe.core.errors import SearchIndexError
from ascribe.schemas.documents import ErrorResponse, SearchHitView, SearchResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


@router.get(
    "/search",
    response_model=SearchResponse,
    response_model_by_alias=True,
    summary="Search the caller's documents",
    responses={400: {"model": ErrorResponse, "description": "Empty query"}},
)
async def search_documents(
    user:   CurrentUser,
    search: Search,
    q:      str = Query(..., description="Free-text query"),
    size:   int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> SearchResponse:
    try:
        results = await search.search(q, user.user_id, size=size, offset=offset)
    except SearchIndexError:
        logger.warning("Search unavailable, returning no results | user=%s", user.user_id, exc_info=True)
        return SearchResponse(query=q, total=0, results=[], degraded=True)

    return SearchResponse(
        query=q,
        total=results.total,
        results=[
            SearchHitView(
                document_id=hit.source.get("documentId", hit.id),
                score=hit.score,
                file_path=hit.source.get("filePath"),
                tags=hit.source.get("tags") or [],
                original_filename=hit.source.get("originalFilename"),
            )
            for hit in results.hits
        ],
    )
