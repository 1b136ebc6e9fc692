"""
Document API Router

  POST   /documents/upload                                 multipart upload, processed inline
  POST   /documents/upload-url                             presigned PUT, processed on the S3 event
  GET    /users/{userId}/documents                         list
  GET    /users/{userId}/documents/{documentId}            document + extracted text
  GET    /users/{userId}/documents/{documentId}/text       text body
  GET    /users/{userId}/documents/{documentId}/download-url
  GET    /users/{userId}/file-paths
  POST   /users/{userId}/documents/{documentId}/finalize
  DELETE /users/{userId}/documents/{documentId}

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → userId (never client-supplied)    │
  │ 2. Size guard on Content-Length, then on the body       │
  │ 3. Temp object + Document(status=temp)                  │
  │ 4. sync path  → OCR + cleanup inline → 200              │
  │    async path → Textract job started   → 202            │
  └─────────────────────────────────────────────────────────┘

Handlers stay thin: every AscribeError propagates to the exception
handlers in ascribe.main, which render the ErrorResponse envelope.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, File, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from ascribe.api.dependencies import AppSettings, CurrentUser, Documents, OwnerId, Pipeline
from ascribe.core.errors import PreconditionError
from ascribe.models.documents import QUESTION_READY_STATUSES, DocumentStatus
from ascribe.schemas.documents import (
    DocumentListResponse,
    DocumentTextResponse,
    DocumentView,
    DownloadUrlResponse,
    ErrorResponse,
    FilePathsResponse,
    FinalizeRequest,
    UploadResponse,
    UploadUrlRequest,
    UploadUrlResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Documents"])

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Missing or invalid field"},
    401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
    403: {"model": ErrorResponse, "description": "Path userId is not the caller"},
    404: {"model": ErrorResponse, "description": "Document not found"},
    502: {"model": ErrorResponse, "description": "Upstream service error"},
}

# Multipart framing on top of the file itself
_FORM_OVERHEAD_BYTES = 4096


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/documents/upload",
    response_model=UploadResponse,
    summary="Upload a document and extract its text",
    description=(
        "JPEG, PNG and PDF files up to 5 MiB are processed inline and the "
        "cleaned text is returned (200). Anything else starts an async OCR "
        "job (202); the document moves to 'cleaned' when the job completes."
    ),
    responses={**_ERRORS, 202: {"model": UploadResponse, "description": "Async OCR job started"}},
)
async def upload_document(
    request:  Request,
    user:     CurrentUser,
    pipeline: Pipeline,
    settings: AppSettings,
    file:     UploadFile = File(..., description="Scanned document (image or PDF)"),
) -> JSONResponse:
    limit = settings.max_upload_size_bytes
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit + _FORM_OVERHEAD_BYTES:
        raise PreconditionError(f"File exceeds the {limit} byte limit.", field="file")

    body = await file.read()
    content_type = file.content_type or "application/octet-stream"
    outcome = await pipeline.ingest_upload(user.user_id, body, content_type, file.filename or "upload")

    result = UploadResponse(**{k: v for k, v in outcome.to_dict().items() if k not in ("skipped", "reason")})
    code = (
        status.HTTP_202_ACCEPTED
        if outcome.status == DocumentStatus.PROCESSING.value
        else status.HTTP_200_OK
    )
    return JSONResponse(
        status_code=code,
        content=result.model_dump(mode="json", by_alias=True),
        headers={
            "X-Document-ID": outcome.document_id,
            "Location":      f"/api/v1/users/{outcome.user_id}/documents/{outcome.document_id}",
        },
    )


# ---------------------------------------------------------------------------
# POST /documents/upload-url
# ---------------------------------------------------------------------------

@router.post(
    "/documents/upload-url",
    response_model=UploadUrlResponse,
    response_model_by_alias=True,
    summary="Presigned URL for a direct-to-S3 upload",
    responses=_ERRORS,
)
async def create_upload_url(
    payload:   UploadUrlRequest,
    user:      CurrentUser,
    documents: Documents,
) -> UploadUrlResponse:
    document_id = str(uuid.uuid4())
    presigned = await documents.upload_url(user.user_id, document_id, payload.filename, payload.content_type)
    logger.info("Upload URL issued | user=%s doc=%s key=%s", user.user_id, document_id, presigned.key)
    return UploadUrlResponse(
        document_id=document_id,
        upload_url=presigned.url,
        key=presigned.key,
        expires_in=presigned.expires_in,
        method=presigned.method,
        headers=presigned.headers,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@router.get(
    "/users/{userId}/documents",
    response_model=DocumentListResponse,
    response_model_by_alias=True,
    summary="List the caller's documents",
    responses=_ERRORS,
)
async def list_documents(user_id: OwnerId, documents: Documents) -> DocumentListResponse:
    docs = await documents.list_documents(user_id)
    return DocumentListResponse(
        documents=[DocumentView.full(d, None, None) for d in docs],
    )


@router.get(
    "/users/{userId}/documents/{documentId}",
    response_model=DocumentView,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    summary="Document with its extracted text",
    description="Only status fields are returned until the document is cleaned.",
    responses=_ERRORS,
)
async def get_document(user_id: OwnerId, documentId: str, documents: Documents) -> DocumentView:
    details = await documents.get(user_id, documentId)
    if details.document.status not in QUESTION_READY_STATUSES:
        return DocumentView.status_only(details.document)
    return DocumentView.full(details.document, details.extracted_text, details.text)


@router.get(
    "/users/{userId}/documents/{documentId}/text",
    response_model=DocumentTextResponse,
    response_model_by_alias=True,
    summary="Current extracted text",
    responses=_ERRORS,
)
async def get_document_text(user_id: OwnerId, documentId: str, documents: Documents) -> DocumentTextResponse:
    record, text = await documents.get_text(user_id, documentId)
    return DocumentTextResponse(
        document_id=documentId,
        extracted_text_id=record.extracted_text_id,
        verified=record.verified,
        text=text,
    )


@router.get(
    "/users/{userId}/documents/{documentId}/download-url",
    response_model=DownloadUrlResponse,
    response_model_by_alias=True,
    summary="Presigned GET URL for the original file",
    responses=_ERRORS,
)
async def get_download_url(user_id: OwnerId, documentId: str, documents: Documents) -> DownloadUrlResponse:
    presigned = await documents.download_url(user_id, documentId)
    return DownloadUrlResponse(
        document_id=documentId,
        download_url=presigned.url,
        expires_in=presigned.expires_in,
    )


@router.get(
    "/users/{userId}/file-paths",
    response_model=FilePathsResponse,
    response_model_by_alias=True,
    summary="Distinct file paths already used by the caller",
    responses=_ERRORS,
)
async def get_file_paths(user_id: OwnerId, documents: Documents) -> FilePathsResponse:
    return FilePathsResponse(file_paths=await documents.file_paths(user_id))


# ---------------------------------------------------------------------------
# POST /users/{userId}/documents/{documentId}/finalize
# ---------------------------------------------------------------------------

@router.post(
    "/users/{userId}/documents/{documentId}/finalize",
    response_model=DocumentView,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    summary="Accept (possibly edited) text and mark the document verified",
    responses=_ERRORS,
)
async def finalize_document(
    user_id:    OwnerId,
    documentId: str,
    payload:    FinalizeRequest,
    documents:  Documents,
) -> DocumentView:
    details = await documents.finalize(
        user_id, documentId, payload.finalized_text, payload.file_path, payload.tags,
    )
    return DocumentView.full(details.document, details.extracted_text, details.text)


# ---------------------------------------------------------------------------
# DELETE /users/{userId}/documents/{documentId}
# ---------------------------------------------------------------------------

@router.delete(
    "/users/{userId}/documents/{documentId}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document with its text, questions and search entry",
    responses=_ERRORS,
)
async def delete_document(user_id: OwnerId, documentId: str, documents: Documents) -> Response:
    await documents.delete(user_id, documentId)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
