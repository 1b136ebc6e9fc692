"""
Error taxonomy shared by gateways, services and the API boundary.

  AscribeError
  ├── PreconditionError        400  missing identifier / field, bad range
  │   └── InvalidStateError    409  document not in a permitted status
  ├── NotFoundError            404
  │   ├── DocumentNotFoundError
  │   ├── ExtractedTextNotFoundError
  │   └── ObjectNotFoundError        (object store key)
  ├── RemoteServiceError       502  provider reachable but erroring
  │   ├── ObjectStoreError
  │   ├── RecordStoreError
  │   ├── OCRError
  │   ├── LLMUnavailableError
  │   ├── SearchIndexError
  │   └── TaskQueueError       503  broker unreachable
  ├── ResponseParseError       502  model answered, answer is not JSON
  └── PipelineFailure          502  async OCR job reported non-success

Collaborators raise these; only the HTTP / worker boundary converts them
(see ascribe.api.errors). status_code and error_code are class attributes
so the mapping needs no isinstance ladder.
"""

from __future__ import annotations


class AscribeError(Exception):
    status_code: int = 500
    error_code:  str = "INTERNAL_ERROR"
    retryable:   bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Client errors
# ---------------------------------------------------------------------------

class PreconditionError(AscribeError):
    status_code = 400
    error_code  = "PRECONDITION_FAILED"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class InvalidStateError(PreconditionError):
    status_code = 409
    error_code  = "INVALID_DOCUMENT_STATE"


class NotFoundError(AscribeError):
    status_code = 404
    error_code  = "NOT_FOUND"


class DocumentNotFoundError(NotFoundError):
    error_code = "DOCUMENT_NOT_FOUND"

    def __init__(self, user_id: str, document_id: str) -> None:
        super().__init__(f"Document '{document_id}' not found for user '{user_id}'.")
        self.user_id = user_id
        self.document_id = document_id


class ExtractedTextNotFoundError(NotFoundError):
    error_code = "EXTRACTED_TEXT_NOT_FOUND"


class ObjectNotFoundError(NotFoundError):
    error_code = "OBJECT_NOT_FOUND"

    def __init__(self, bucket: str, key: str) -> None:
        super().__init__(f"Object s3://{bucket}/{key} does not exist.")
        self.bucket = bucket
        self.key = key


# ---------------------------------------------------------------------------
# Remote-service errors
# ---------------------------------------------------------------------------

class RemoteServiceError(AscribeError):
    """A provider call failed. Carries the operation and the key / table / job id."""

    status_code = 502
    error_code  = "REMOTE_SERVICE_ERROR"
    retryable   = True

    def __init__(self, operation: str, target: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed for {target}{detail}")
        self.operation = operation
        self.target = target
        self.cause = cause


class ObjectStoreError(RemoteServiceError):
    error_code = "STORAGE_ERROR"


class RecordStoreError(RemoteServiceError):
    error_code = "RECORD_STORE_ERROR"


class OCRError(RemoteServiceError):
    error_code = "OCR_ERROR"


class LLMUnavailableError(RemoteServiceError):
    error_code = "MODEL_UNAVAILABLE"


class SearchIndexError(RemoteServiceError):
    error_code = "SEARCH_ERROR"


class TaskQueueError(RemoteServiceError):
    status_code = 503
    error_code  = "QUEUE_ERROR"


# ---------------------------------------------------------------------------
# Unrecoverable pipeline errors
# ---------------------------------------------------------------------------

class ResponseParseError(AscribeError):
    status_code = 502
    error_code  = "MODEL_RESPONSE_INVALID"

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class PipelineFailure(AscribeError):
    status_code = 502
    error_code  = "PIPELINE_FAILED"
