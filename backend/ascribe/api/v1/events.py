"""
Event Webhooks → Celery

  POST /events/object-created   S3 "Object Created" (EventBridge detail or S3 notification Records)
  POST /events/textract         Textract completion via SNS HTTP(S) subscription

Both answer 202 once the work is queued; processing happens in
ascribe.workers.tasks. These routes carry no user JWT (AWS is the caller).
Instead the object-created bucket must be the documents bucket, and SNS
messages must come from the configured Textract topic, with a SubscribeURL
on an amazonaws.com host.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import unquote_plus, urlparse

import httpx
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from ascribe.api.dependencies import AppSettings, Publisher
from ascribe.core.config import Settings
from ascribe.core.errors import PreconditionError, RemoteServiceError
from ascribe.schemas.documents import ErrorResponse, EventAccepted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])

SNS_SUBSCRIBE_TIMEOUT_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def parse_object_created(payload: dict[str, Any]) -> list[tuple[str, str]]:
    """
    ``(bucket, key)`` pairs from either an EventBridge event
    (``detail.bucket.name`` / ``detail.object.key``) or an S3 notification
    (``Records[].s3``, keys URL-encoded).
    """
    detail = payload.get("detail")
    if isinstance(detail, dict):
        bucket = (detail.get("bucket") or {}).get("name")
        key = (detail.get("object") or {}).get("key")
        if not bucket or not key:
            raise PreconditionError("Event detail is missing bucket.name or object.key.", field="detail")
        return [(bucket, key)]

    records = payload.get("Records")
    if isinstance(records, list):
        pairs = []
        for record in records:
            s3 = record.get("s3") or {}
            bucket = (s3.get("bucket") or {}).get("name")
            key = (s3.get("object") or {}).get("key")
            if bucket and key:
                pairs.append((bucket, unquote_plus(key)))
        if pairs:
            return pairs

    raise PreconditionError("Unrecognised object-created event.", field="body")


def validate_sns_envelope(envelope: dict[str, Any], settings: Settings) -> str:
    """Returns the SNS message type after checking the topic."""
    message_type = envelope.get("Type")
    if not message_type:
        raise PreconditionError("SNS message has no Type.", field="Type")
    topic = settings.textract_sns_topic_arn
    if topic and envelope.get("TopicArn") != topic:
        raise PreconditionError(f"Unexpected SNS topic '{envelope.get('TopicArn')}'.", field="TopicArn")
    return message_type


def validate_subscribe_url(url: str | None) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme != "https" or not (parsed.hostname or "").endswith(".amazonaws.com"):
        raise PreconditionError("SubscribeURL must be an https amazonaws.com URL.", field="SubscribeURL")
    return url


async def confirm_subscription(url: str) -> None:
    try:
        async with httpx.AsyncClient(timeout=SNS_SUBSCRIBE_TIMEOUT_SECONDS) as client:
            resp = await client.get(url)
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        raise RemoteServiceError("sns_confirm_subscription", url, exc) from exc


# ---------------------------------------------------------------------------
# POST /events/object-created
# ---------------------------------------------------------------------------

@router.post(
    "/object-created",
    response_model=list[EventAccepted],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue processing for a new temp object",
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def object_created(request: Request, settings: AppSettings, publisher: Publisher) -> JSONResponse:
    payload = await _json_body(request)
    accepted: list[EventAccepted] = []

    for bucket, key in parse_object_created(payload):
        if bucket != settings.documents_bucket:
            raise PreconditionError(f"Unexpected bucket '{bucket}'.", field="bucket")
        task_id = await publisher.publish_upload(bucket, key)
        accepted.append(EventAccepted(task_id=task_id, detail=key))

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=[a.model_dump(mode="json", by_alias=True) for a in accepted],
    )


# ---------------------------------------------------------------------------
# POST /events/textract
# ---------------------------------------------------------------------------

@router.post(
    "/textract",
    response_model=EventAccepted,
    summary="Textract job completion (SNS)",
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def textract_notification(request: Request, settings: AppSettings, publisher: Publisher) -> JSONResponse:
    # SNS posts JSON with Content-Type text/plain
    envelope = await _json_body(request)
    message_type = validate_sns_envelope(envelope, settings)

    if message_type == "SubscriptionConfirmation":
        url = validate_subscribe_url(envelope.get("SubscribeURL"))
        await confirm_subscription(url)
        logger.info("SNS subscription confirmed | topic=%s", envelope.get("TopicArn"))
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=EventAccepted(detail="subscription confirmed").model_dump(mode="json", by_alias=True),
        )

    if message_type != "Notification":
        logger.info("SNS message ignored | type=%s", message_type)
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=EventAccepted(accepted=False, detail=f"ignored {message_type}").model_dump(
                mode="json", by_alias=True,
            ),
        )

    message = envelope.get("Message")
    if not message:
        raise PreconditionError("SNS notification has no Message.", field="Message")
    task_id = await publisher.publish_job_completion(message)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=EventAccepted(task_id=task_id).model_dump(mode="json", by_alias=True),
    )


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except json.JSONDecodeError as exc:
        raise PreconditionError(f"Body is not valid JSON: {exc.msg}", field="body") from exc
    if not isinstance(payload, dict):
        raise PreconditionError("Body must be a JSON object.", field="body")
    return payload
