"""
S3 Object Store Gateway — User-Scoped Key Scheme

Key layout (all constructed server-side, never accepted from a client):

    temp/<userId>/<documentId>-<sanitized name>        raw upload, unprocessed
    documents/<userId>/<documentId>                    raw upload, after the move
    extracted-texts/<userId>/<documentId>/<rev>.txt    one object per text revision

Object metadata written on temp uploads (S3 lower-cases the keys):

    uploaded-by        owning userId
    document-id        documentId the upload belongs to
    original-filename  URL-quoted client filename
    ingest-trigger     "api" (processed inline) | "event" (processed by the upload event)

The gateway holds no state beyond an aioboto3 session. Every provider error
is re-raised as ObjectStoreError carrying the operation and the s3:// target;
a missing key maps to ObjectNotFoundError. Missing bucket / key arguments
fail with PreconditionError before a client is opened.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from urllib.parse import quote, unquote

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from ascribe.core.config import Settings
from ascribe.core.errors import ObjectNotFoundError, ObjectStoreError, PreconditionError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ObjectMetadata:
    """Upload metadata recovered from a HEAD request on a temp object."""
    user_id:           str
    document_id:       str
    content_type:      str
    file_size:         int
    original_filename: str
    trigger:           str


@dataclass(frozen=True)
class PresignedUrl:
    url:        str
    key:        str
    expires_in: int               # seconds
    method:     str               # GET | PUT
    headers:    dict[str, str]    # headers the client must echo on PUT


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def sanitize_filename(filename: str) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with S3-safe characters.
    """
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200] or "upload"


def _require(**values: str | None) -> None:
    for name, value in values.items():
        if not value:
            raise PreconditionError(f"'{name}' is required.", field=name)


def _target(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"


def _is_not_found(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class ObjectStoreGateway:
    """
    Async S3 operations for the document pipeline.

    One instance may be shared by every request and task; aioboto3 clients
    are opened per call inside ``async with`` blocks.
    """

    def __init__(self, settings: Settings, session: aioboto3.Session | None = None) -> None:
        self._settings = settings
        self._session = session or aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._settings.aws_region)

    # ------------------------------------------------------------------
    # Key construction
    # ------------------------------------------------------------------

    def temp_namespace(self, user_id: str) -> str:
        return f"{self._settings.temp_prefix}/{user_id}/"

    def temp_key(self, user_id: str, document_id: str, original_name: str) -> str:
        return f"{self.temp_namespace(user_id)}{document_id}-{sanitize_filename(original_name)}"

    def final_key(self, user_id: str, document_id: str) -> str:
        return f"{self._settings.documents_prefix}/{user_id}/{document_id}"

    def text_key(self, user_id: str, document_id: str) -> str:
        revision = uuid.uuid4().hex
        return f"{self._settings.extracted_texts_prefix}/{user_id}/{document_id}/{revision}.txt"

    def is_temp_key(self, key: str) -> bool:
        return key.startswith(f"{self._settings.temp_prefix}/")

    @staticmethod
    def upload_metadata(
        user_id: str,
        document_id: str,
        original_name: str,
        trigger: str,
    ) -> dict[str, str]:
        return {
            "uploaded-by":       user_id,
            "document-id":       document_id,
            "original-filename": quote(original_name, safe=""),
            "ingest-trigger":    trigger,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put_temp(
        self,
        bucket: str,
        user_id: str,
        body: bytes,
        content_type: str,
        original_name: str,
        document_id: str,
        trigger: str = "api",
    ) -> str:
        """
        Store raw upload bytes under the user's temp namespace.

        Returns:
            The temp key the object was written to.
        """
        _require(bucket=bucket, user_id=user_id, document_id=document_id)
        key = self.temp_key(user_id, document_id, original_name or "upload")

        async with self._client() as s3:
            try:
                await s3.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type or "application/octet-stream",
                    Metadata=self.upload_metadata(user_id, document_id, original_name, trigger),
                )
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("put_temp", _target(bucket, key), exc) from exc

        logger.info(
            "S3 temp upload ok | user=%s doc=%s key=%s size=%d",
            user_id, document_id, key, len(body),
        )
        return key

    async def put_text(self, bucket: str, user_id: str, document_id: str, text: str) -> str:
        """Write a text body to a fresh revision key; never overwrites an earlier revision."""
        _require(bucket=bucket, user_id=user_id, document_id=document_id)
        key = self.text_key(user_id, document_id)
        body = text.encode("utf-8")

        async with self._client() as s3:
            try:
                await s3.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=body,
                    ContentType="text/plain; charset=utf-8",
                )
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("put_text", _target(bucket, key), exc) from exc

        logger.info("S3 text upload ok | user=%s doc=%s key=%s size=%d", user_id, document_id, key, len(body))
        return key

    async def move_temp_to_final(
        self,
        bucket: str,
        user_id: str,
        document_id: str,
        temp_key: str,
    ) -> str:
        """
        Copy a temp object to its final key, then delete the source.

        The source delete is best-effort: a failure is logged and the copy
        stands. Leftover temp objects are expired by the bucket lifecycle rule.
        """
        _require(bucket=bucket, user_id=user_id, document_id=document_id, temp_key=temp_key)
        if not temp_key.startswith(self.temp_namespace(user_id)):
            raise PreconditionError(
                f"Key '{temp_key}' is outside the temp namespace of user '{user_id}'.",
                field="temp_key",
            )

        final_key = self.final_key(user_id, document_id)

        async with self._client() as s3:
            try:
                await s3.copy_object(
                    Bucket=bucket,
                    Key=final_key,
                    CopySource={"Bucket": bucket, "Key": temp_key},
                    MetadataDirective="COPY",
                )
            except ClientError as exc:
                if _is_not_found(exc):
                    raise ObjectNotFoundError(bucket, temp_key) from exc
                raise ObjectStoreError("move_temp_to_final", _target(bucket, temp_key), exc) from exc
            except BotoCoreError as exc:
                raise ObjectStoreError("move_temp_to_final", _target(bucket, temp_key), exc) from exc

            try:
                await s3.delete_object(Bucket=bucket, Key=temp_key)
            except (ClientError, BotoCoreError):
                logger.warning(
                    "S3 temp cleanup failed, copy kept | src=%s dst=%s",
                    temp_key, final_key, exc_info=True,
                )

        logger.info("S3 move ok | user=%s doc=%s src=%s dst=%s", user_id, document_id, temp_key, final_key)
        return final_key

    async def delete(self, bucket: str, key: str) -> bool:
        """
        Delete an object.

        Returns:
            True if the object existed, False if it was already absent.
            Deleting an absent key is not an error.
        """
        _require(bucket=bucket, key=key)

        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if _is_not_found(exc):
                    logger.info("S3 delete skipped, already absent | key=%s", key)
                    return False
                raise ObjectStoreError("delete", _target(bucket, key), exc) from exc
            except BotoCoreError as exc:
                raise ObjectStoreError("delete", _target(bucket, key), exc) from exc

            try:
                await s3.delete_object(Bucket=bucket, Key=key)
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("delete", _target(bucket, key), exc) from exc

        logger.info("S3 delete ok | key=%s", key)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, bucket: str, key: str) -> bytes:
        _require(bucket=bucket, key=key)

        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                if _is_not_found(exc):
                    raise ObjectNotFoundError(bucket, key) from exc
                raise ObjectStoreError("get", _target(bucket, key), exc) from exc
            except BotoCoreError as exc:
                raise ObjectStoreError("get", _target(bucket, key), exc) from exc

    async def get_text(self, bucket: str, key: str) -> str:
        return (await self.get(bucket, key)).decode("utf-8")

    async def exists(self, bucket: str, key: str) -> bool:
        _require(bucket=bucket, key=key)

        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if _is_not_found(exc):
                    return False
                raise ObjectStoreError("exists", _target(bucket, key), exc) from exc
            except BotoCoreError as exc:
                raise ObjectStoreError("exists", _target(bucket, key), exc) from exc
        return True

    async def check_health(self, bucket: str) -> dict[str, str]:
        """Readiness check: ``{"status": "ok"}`` or ``{"status": "error", "error": ...}``."""
        async with self._client() as s3:
            try:
                await s3.head_bucket(Bucket=bucket)
            except (ClientError, BotoCoreError) as exc:
                logger.warning("Bucket health check failed | bucket=%s error=%s", bucket, exc)
                return {"status": "error", "error": str(exc)}
        return {"status": "ok"}

    async def head(self, bucket: str, key: str) -> ObjectMetadata:
        """
        Read the upload metadata of an object.

        Raises:
            PreconditionError: the object carries no 'uploaded-by' metadata.
        """
        _require(bucket=bucket, key=key)

        async with self._client() as s3:
            try:
                resp = await s3.head_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if _is_not_found(exc):
                    raise ObjectNotFoundError(bucket, key) from exc
                raise ObjectStoreError("head", _target(bucket, key), exc) from exc
            except BotoCoreError as exc:
                raise ObjectStoreError("head", _target(bucket, key), exc) from exc

        meta = resp.get("Metadata") or {}
        user_id = meta.get("uploaded-by")
        if not user_id:
            raise PreconditionError(f"Object {_target(bucket, key)} has no 'uploaded-by' metadata.")

        return ObjectMetadata(
            user_id=user_id,
            document_id=meta.get("document-id") or "",
            content_type=resp.get("ContentType") or "application/octet-stream",
            file_size=int(resp.get("ContentLength") or 0),
            original_filename=unquote(meta.get("original-filename") or key.rsplit("/", 1)[-1]),
            trigger=meta.get("ingest-trigger") or "event",
        )

    # ------------------------------------------------------------------
    # Presigned URLs
    # ------------------------------------------------------------------

    async def presigned_get(self, bucket: str, key: str, expires_in: int | None = None) -> PresignedUrl:
        """Short-lived GET URL scoped to the exact object key."""
        _require(bucket=bucket, key=key)
        ttl = expires_in or self._settings.presigned_url_ttl_seconds

        async with self._client() as s3:
            try:
                url = await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": bucket, "Key": key},
                    ExpiresIn=ttl,
                )
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("presigned_get", _target(bucket, key), exc) from exc
        return PresignedUrl(url=url, key=key, expires_in=ttl, method="GET", headers={})

    async def presigned_put_temp(
        self,
        bucket: str,
        user_id: str,
        document_id: str,
        original_name: str,
        content_type: str,
        expires_in: int | None = None,
    ) -> PresignedUrl:
        """
        Short-lived PUT URL for a direct browser upload into the temp namespace.
        The client must send back every header in ``headers`` or S3 rejects
        the signature.
        """
        _require(bucket=bucket, user_id=user_id, document_id=document_id)
        key = self.temp_key(user_id, document_id, original_name or "upload")
        ttl = expires_in or self._settings.presigned_url_ttl_seconds
        metadata = self.upload_metadata(user_id, document_id, original_name, "event")

        async with self._client() as s3:
            try:
                url = await s3.generate_presigned_url(
                    "put_object",
                    Params={
                        "Bucket":      bucket,
                        "Key":         key,
                        "ContentType": content_type,
                        "Metadata":    metadata,
                    },
                    ExpiresIn=ttl,
                )
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError("presigned_put", _target(bucket, key), exc) from exc

        headers = {"Content-Type": content_type}
        headers.update({f"x-amz-meta-{k}": v for k, v in metadata.items()})
        return PresignedUrl(url=url, key=key, expires_in=ttl, method="PUT", headers=headers)
