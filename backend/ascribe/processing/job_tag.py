"""
Async OCR job tags — encode, decode, resolve.

Textract carries a caller-supplied JobTag (≤ 64 chars, ``[a-zA-Z0-9_.:-]``)
from StartDocumentTextDetection through to the SNS completion message.
It is the only field that correlates a completion back to a document.

Format
──────
    v1-<sha256(userId:documentId)[:16]>

Versioned, fixed length (19 chars) and non-reversible. Raw identifiers are
never embedded: Cognito subs plus UUIDs overflow the 64-char ceiling.

Older jobs were started with the raw form ``document||<userId>||<documentId>``.
``parse_job_tag`` still understands it so completions for jobs in flight
across a deploy resolve.

Resolution (JobTagResolver)
───────────────────────────
Because v1 tags cannot be inverted, identifiers come back through the
provider round trip instead:

  1. DocumentLocation in the completion → HEAD the temp object → its
     ``uploaded-by`` / ``document-id`` metadata; accepted only if the pair
     re-hashes to the received tag.
  2. Fallback: query the documents table GSI on ``jobTag`` (written on the
     Document when the job starts). Covers duplicate deliveries that arrive
     after the temp object was already moved.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

from ascribe.core.errors import NotFoundError, ObjectNotFoundError, PreconditionError

logger = logging.getLogger(__name__)

JOB_TAG_VERSION = "v1"
JOB_TAG_MAX_LENGTH = 64
_DIGEST_LENGTH = 16
_LEGACY_PREFIX = "document"
_LEGACY_SEPARATOR = "||"


@dataclass(frozen=True)
class ParsedJobTag:
    version:     str
    digest:      str | None = None
    user_id:     str | None = None   # only for legacy tags
    document_id: str | None = None   # only for legacy tags

    @property
    def is_reversible(self) -> bool:
        return self.user_id is not None and self.document_id is not None


def _digest(user_id: str, document_id: str) -> str:
    return hashlib.sha256(f"{user_id}:{document_id}".encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]


def encode_job_tag(user_id: str, document_id: str) -> str:
    if not user_id or not document_id:
        raise PreconditionError("Both user_id and document_id are required to build a job tag.")
    return f"{JOB_TAG_VERSION}-{_digest(user_id, document_id)}"


def parse_job_tag(tag: str) -> ParsedJobTag:
    if not tag:
        raise PreconditionError("Job tag is empty.", field="JobTag")

    if tag.startswith(f"{JOB_TAG_VERSION}-"):
        digest = tag[len(JOB_TAG_VERSION) + 1:]
        if len(digest) != _DIGEST_LENGTH:
            raise PreconditionError(f"Malformed {JOB_TAG_VERSION} job tag '{tag}'.", field="JobTag")
        return ParsedJobTag(version=JOB_TAG_VERSION, digest=digest)

    parts = tag.split(_LEGACY_SEPARATOR)
    if len(parts) == 3 and parts[0] == _LEGACY_PREFIX and parts[1] and parts[2]:
        return ParsedJobTag(version="legacy", user_id=parts[1], document_id=parts[2])

    raise PreconditionError(f"Unrecognised job tag '{tag}'.", field="JobTag")


def job_tag_matches(tag: str, user_id: str, document_id: str) -> bool:
    parsed = parse_job_tag(tag)
    if parsed.is_reversible:
        return (parsed.user_id, parsed.document_id) == (user_id, document_id)
    return parsed.digest == _digest(user_id, document_id)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class JobTagResolver:
    """Recover ``(user_id, document_id)`` for a completed OCR job."""

    def __init__(self, objects, documents) -> None:
        self._objects = objects        # ObjectStoreGateway
        self._documents = documents    # DocumentRepository

    async def resolve(
        self,
        job_tag: str,
        bucket: str | None = None,
        key: str | None = None,
    ) -> tuple[str, str]:
        parsed = parse_job_tag(job_tag)
        if parsed.is_reversible:
            return parsed.user_id, parsed.document_id

        if bucket and key:
            try:
                meta = await self._objects.head(bucket, key)
            except ObjectNotFoundError:
                logger.info("Job tag source object gone, using index | tag=%s key=%s", job_tag, key)
            else:
                if meta.document_id and job_tag_matches(job_tag, meta.user_id, meta.document_id):
                    return meta.user_id, meta.document_id
                logger.warning(
                    "Job tag does not match object metadata | tag=%s key=%s user=%s doc=%s",
                    job_tag, key, meta.user_id, meta.document_id,
                )

        for doc in await self._documents.find_by_job_tag(job_tag):
            if job_tag_matches(job_tag, doc.user_id, doc.document_id):
                return doc.user_id, doc.document_id

        raise NotFoundError(f"No document matches job tag '{job_tag}'.")
