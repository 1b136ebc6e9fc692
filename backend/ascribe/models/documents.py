"""
Record models — Document, ExtractedText, Question

Attribute names on the wire are camelCase (``userId``, ``extractedTextId``);
Python code uses snake_case through pydantic aliases.

Document state machine:

    temp ──► processing ──► cleaned ──► verified
      │           │            │
      └───────────┴────────────┴──► failed

``extractedTextId`` is set only in cleaned / verified and is removed when
a document transitions to failed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DocumentStatus(str, Enum):
    TEMP       = "temp"         # bytes stored at a temp key, nothing extracted
    PROCESSING = "processing"   # async OCR job started
    CLEANED    = "cleaned"      # extraction + cleanup done, awaiting human review
    VERIFIED   = "verified"     # human accepted (possibly edited) the text
    FAILED     = "failed"       # unrecoverable extraction / cleanup error


QUESTION_READY_STATUSES: frozenset[str] = frozenset(
    {DocumentStatus.CLEANED.value, DocumentStatus.VERIFIED.value}
)


class ExtractionMethod(str, Enum):
    SYNC  = "sync"
    ASYNC = "async"


# ---------------------------------------------------------------------------
# Base record
# ---------------------------------------------------------------------------

class Record(BaseModel):
    """
    Shared (de)serialization for record-store items.

    ``string_sets`` lists the fields stored as DynamoDB string sets; every
    other list is stored as an ordered List.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )

    string_sets: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def attribute(cls, field_name: str) -> str:
        return cls.model_fields[field_name].alias or field_name

    @classmethod
    def _encode(cls, field_name: str, value: Any) -> Any:
        if isinstance(value, Enum):
            value = value.value
        if field_name in cls.string_sets and value is not None:
            return set(value)
        return value

    def to_item(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        return {self.attribute(name): self._encode(name, v) for name, v in data.items()}

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Record":
        return cls.model_validate(item)

    @classmethod
    def changes(cls, **fields: Any) -> dict[str, Any]:
        """Translate snake_case keyword changes into a sparse attribute dict."""
        unknown = set(fields) - set(cls.model_fields)
        if unknown:
            raise ValueError(f"Unknown {cls.__name__} fields: {sorted(unknown)}")
        return {cls.attribute(name): cls._encode(name, v) for name, v in fields.items()}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class Document(Record):
    string_sets: ClassVar[frozenset[str]] = frozenset({"tags"})

    user_id:                str
    document_id:            str
    file_key:               str
    original_filename:      str = ""
    upload_date:            str = Field(default_factory=utc_now_iso)
    content_type:           str = "application/octet-stream"
    file_size:              int = 0
    text_extraction_method: ExtractionMethod | None = None
    status:                 DocumentStatus = DocumentStatus.TEMP
    tags:                   list[str] = Field(default_factory=list)
    file_path:              str | None = None
    extracted_text_id:      str | None = None
    textract_job_id:        str | None = None
    job_tag:                str | None = None
    failure_reason:         str | None = None
    updated_at:             str | None = None


class ExtractedText(Record):
    string_sets: ClassVar[frozenset[str]] = frozenset({"questions_id"})

    extracted_text_id:  str
    document_id:        str
    user_id:            str = ""
    processed_date:     str = Field(default_factory=utc_now_iso)
    verified:           bool = False
    text_file_key:      str
    average_confidence: float = 0.0
    summary_id:         str | None = None
    questions_id:       list[str] = Field(default_factory=list)
    tokens:             int = 0


class Question(Record):
    question_id: str
    document_id: str
    tags:        list[str] = Field(default_factory=list)
    question:    str
    choices:     list[str] = Field(default_factory=list)
    answer:      str
    created_at:  str = Field(default_factory=utc_now_iso)
