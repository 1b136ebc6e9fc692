"""
HTTP Request/Response Schemas

Covers every route under /api/v1:
  - Upload (direct multipart + presigned URL)
  - Document read / text / download URL / file paths
  - Finalize, delete
  - Question generation + listing
  - Search
  - Structured error bodies for all 4xx/5xx

Wire format is camelCase (``documentId``, ``extractedTextId``), matching the
record attributes; Python code uses snake_case through aliases.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ascribe.models.documents import Document, ExtractedText, Question


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

class UploadResponse(CamelModel):
    """
    200 for the sync path (cleaned text included), 202 for the async path
    (job started, cleaned text arrives with the completion callback).
    """
    user_id:                str
    document_id:            str
    status:                 str
    text_extraction_method: str | None = None
    job_id:                 str | None = None
    cleaned_text:           str | None = None
    tags:                   list[str] = Field(default_factory=list)
    suggested_file_path:    str | None = None
    extracted_text_id:      str | None = None
    average_confidence:     float | None = None


class UploadUrlRequest(CamelModel):
    filename:     str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., min_length=1)


class UploadUrlResponse(CamelModel):
    document_id: str
    upload_url:  str
    key:         str
    expires_in:  int
    method:      str = "PUT"
    headers:     dict[str, str] = Field(default_factory=dict)


class DownloadUrlResponse(CamelModel):
    document_id:  str
    download_url: str
    expires_in:   int


# ---------------------------------------------------------------------------
# Document read
# ---------------------------------------------------------------------------

class ExtractedTextView(CamelModel):
    extracted_text_id:  str
    text_file_key:      str
    processed_date:     str
    verified:           bool
    average_confidence: float
    tokens:             int
    questions_id:       list[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ExtractedText) -> "ExtractedTextView":
        return cls(**record.model_dump(include=set(cls.model_fields)))


class DocumentView(CamelModel):
    user_id:                str
    document_id:            str
    status:                 str
    original_filename:      str = ""
    upload_date:            str | None = None
    content_type:           str | None = None
    file_size:              int | None = None
    file_key:               str | None = None
    file_path:              str | None = None
    tags:                   list[str] = Field(default_factory=list)
    text_extraction_method: str | None = None
    failure_reason:         str | None = None
    extracted_text:         ExtractedTextView | None = None
    text:                   str | None = None

    @classmethod
    def status_only(cls, doc: Document) -> "DocumentView":
        return cls(
            user_id=doc.user_id,
            document_id=doc.document_id,
            status=doc.status,
            original_filename=doc.original_filename,
            failure_reason=doc.failure_reason,
        )

    @classmethod
    def full(
        cls,
        doc: Document,
        record: ExtractedText | None,
        text: str | None,
    ) -> "DocumentView":
        return cls(
            user_id=doc.user_id,
            document_id=doc.document_id,
            status=doc.status,
            original_filename=doc.original_filename,
            upload_date=doc.upload_date,
            content_type=doc.content_type,
            file_size=doc.file_size,
            file_key=doc.file_key,
            file_path=doc.file_path,
            tags=doc.tags,
            text_extraction_method=doc.text_extraction_method,
            extracted_text=ExtractedTextView.from_record(record) if record else None,
            text=text,
        )


class DocumentTextResponse(CamelModel):
    document_id:       str
    extracted_text_id: str
    verified:          bool
    text:              str


class DocumentListResponse(CamelModel):
    documents: list[DocumentView]


class FilePathsResponse(CamelModel):
    file_paths: list[str]


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------

class FinalizeRequest(CamelModel):
    finalized_text: str
    file_path:      str
    tags:           list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

class GenerateQuestionsRequest(CamelModel):
    # Range is enforced by QuestionService so the error body matches the
    # rest of the precondition failures.
    num_questions: int


class QuestionView(CamelModel):
    question_id: str
    document_id: str
    question:    str
    answer:      str
    choices:     list[str] = Field(default_factory=list)
    tags:        list[str] = Field(default_factory=list)
    created_at:  str

    @classmethod
    def from_record(cls, question: Question) -> "QuestionView":
        return cls(**question.model_dump(include=set(cls.model_fields)))


class QuestionListResponse(CamelModel):
    document_id: str
    questions:   list[QuestionView]


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchHitView(CamelModel):
    document_id: str
    score:       float
    file_path:   str | None = None
    tags:        list[str] = Field(default_factory=list)
    original_filename: str | None = None


class SearchResponse(CamelModel):
    query:    str
    total:    int
    results:  list[SearchHitView]
    degraded: bool = False


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class EventAccepted(CamelModel):
    accepted: bool = True
    task_id:  str | None = None
    detail:   str | None = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error; may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    ``error`` repeats the message for clients that only read that key.
    Clients should check `error_code` for programmatic handling.
    """
    error:      str               = Field(..., description="Human-readable summary")
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")
    stack:      str | None        = Field(None, description="Traceback, non-production debug only")

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
