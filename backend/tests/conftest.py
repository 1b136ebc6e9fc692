"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa keys, test_jwks
  function-scoped : settings, in-memory stores, repositories, mocked
                    OCR / cleanup / search / question generator, pipeline,
                    services, tokens, sample bytes, async_client

Environment strategy:
  - No test touches AWS. S3 and DynamoDB are replaced by in-memory
    gateways with the same contract; Textract, Bedrock and OpenSearch
    are AsyncMocks. unreliable_search is the exception: a real
    SearchIndexer over httpx.MockTransport that fails the way a broken
    domain does.
  - JWT tokens are built with a test RSA key — no live identity provider.
  - Celery is never contacted; the TaskPublisher is mocked.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # HTTP routes through the FastAPI stack
  pytest -m pipeline              # state machine scenarios
"""

from __future__ import annotations

import base64
import os
import time
from typing import Any, AsyncGenerator, Iterable, Mapping
from urllib.parse import unquote
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from botocore.credentials import Credentials
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Environment BEFORE any ascribe imports so module-level settings read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("AWS_DEFAULT_REGION",    "us-east-1")
os.environ.setdefault("DOCUMENTS_BUCKET",      "test-bucket")
os.environ.setdefault("OPENSEARCH_ENDPOINT",   "")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")
os.environ.setdefault("AUTH_ISSUER",           "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_test")
os.environ.setdefault("AUTH_AUDIENCE",         "test-app-client")

from ascribe.core.config import Settings  # noqa: E402
from ascribe.core.errors import InvalidStateError, NotFoundError, ObjectNotFoundError, PreconditionError  # noqa: E402
from ascribe.llm.cleanup import TextCleanupClient  # noqa: E402
from ascribe.llm.parsing import CleanupResult, GeneratedQuestion  # noqa: E402
from ascribe.llm.questions import QuestionGenerator  # noqa: E402
from ascribe.processing.ocr import AsyncJob, OCRResult, TextractClient  # noqa: E402
from ascribe.records.dynamodb import (  # noqa: E402
    RecordStoreGateway,
    build_update_expression,
    from_dynamo,
    to_dynamo,
)
from ascribe.records.repositories import (  # noqa: E402
    DocumentRepository,
    ExtractedTextRepository,
    QuestionRepository,
)
from ascribe.search.opensearch import SearchIndexer, SearchResults  # noqa: E402
from ascribe.services.documents import DocumentService  # noqa: E402
from ascribe.services.pipeline import DocumentPipeline  # noqa: E402
from ascribe.services.questions import QuestionService  # noqa: E402
from ascribe.storage.s3 import ObjectMetadata, ObjectStoreGateway, PresignedUrl  # noqa: E402

TEST_KID      = "test-key-id-2024"
TEST_ISSUER   = "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_test"
TEST_AUDIENCE = "test-app-client"
TEST_USER_ID  = "user-1111"
TEST_BUCKET   = "test-bucket"


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        documents_bucket=TEST_BUCKET,
        textract_sns_topic_arn="arn:aws:sns:us-east-1:000000000000:textract-done",
        textract_role_arn="arn:aws:iam::000000000000:role/textract-sns",
        opensearch_endpoint="",
        auth_issuer=TEST_ISSUER,
        auth_audience=TEST_AUDIENCE,
        app_env="development",
        debug=True,
    )


# ─────────────────────────────────────────────────────────────────────────────
# In-memory object store
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryObjectStore(ObjectStoreGateway):
    """
    ObjectStoreGateway with S3 replaced by a dict. Key construction,
    namespace checks and not-found semantics are inherited or mirrored.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[str] = []

    def _store(self, bucket: str, key: str, body: bytes, content_type: str, metadata: dict[str, str]) -> None:
        self.objects[(bucket, key)] = {"body": body, "content_type": content_type, "metadata": dict(metadata)}

    async def put_temp(self, bucket, user_id, body, content_type, original_name, document_id, trigger="api"):
        self.calls.append("put_temp")
        key = self.temp_key(user_id, document_id, original_name or "upload")
        self._store(bucket, key, body, content_type, self.upload_metadata(user_id, document_id, original_name, trigger))
        return key

    async def put_text(self, bucket, user_id, document_id, text):
        self.calls.append("put_text")
        key = self.text_key(user_id, document_id)
        self._store(bucket, key, text.encode("utf-8"), "text/plain; charset=utf-8", {})
        return key

    async def move_temp_to_final(self, bucket, user_id, document_id, temp_key):
        self.calls.append("move_temp_to_final")
        if not temp_key.startswith(self.temp_namespace(user_id)):
            raise PreconditionError("outside temp namespace", field="temp_key")
        if (bucket, temp_key) not in self.objects:
            raise ObjectNotFoundError(bucket, temp_key)
        final_key = self.final_key(user_id, document_id)
        self.objects[(bucket, final_key)] = dict(self.objects.pop((bucket, temp_key)))
        return final_key

    async def delete(self, bucket, key):
        self.calls.append("delete")
        return self.objects.pop((bucket, key), None) is not None

    async def get(self, bucket, key):
        self.calls.append("get")
        if (bucket, key) not in self.objects:
            raise ObjectNotFoundError(bucket, key)
        return self.objects[(bucket, key)]["body"]

    async def exists(self, bucket, key):
        return (bucket, key) in self.objects

    async def head(self, bucket, key):
        self.calls.append("head")
        if (bucket, key) not in self.objects:
            raise ObjectNotFoundError(bucket, key)
        obj = self.objects[(bucket, key)]
        meta = obj["metadata"]
        return ObjectMetadata(
            user_id=meta["uploaded-by"],
            document_id=meta.get("document-id", ""),
            content_type=obj["content_type"],
            file_size=len(obj["body"]),
            original_filename=unquote(meta.get("original-filename", "")),
            trigger=meta.get("ingest-trigger", "event"),
        )

    async def presigned_get(self, bucket, key, expires_in=None):
        return PresignedUrl(url=f"https://{bucket}.s3.test/{key}?sig=get", key=key,
                            expires_in=expires_in or 900, method="GET", headers={})

    async def presigned_put_temp(self, bucket, user_id, document_id, original_name, content_type, expires_in=None):
        key = self.temp_key(user_id, document_id, original_name or "upload")
        headers = {"Content-Type": content_type}
        headers.update({
            f"x-amz-meta-{k}": v
            for k, v in self.upload_metadata(user_id, document_id, original_name, "event").items()
        })
        return PresignedUrl(url=f"https://{bucket}.s3.test/{key}?sig=put", key=key,
                            expires_in=expires_in or 900, method="PUT", headers=headers)

    def put_raw(self, bucket: str, key: str, body: bytes, content_type: str, metadata: dict[str, str]) -> None:
        """Simulate a presigned upload landing in the bucket."""
        self._store(bucket, key, body, content_type, metadata)

    @property
    def mutations(self) -> list[str]:
        return [c for c in self.calls if c not in ("get", "head")]


# ─────────────────────────────────────────────────────────────────────────────
# In-memory record store
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryRecordStore(RecordStoreGateway):
    """
    RecordStoreGateway over dicts. Key validation, the update expression
    builder and the Dynamo type mapping are the real ones.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.tables: dict[str, dict[tuple, dict[str, Any]]] = {name: {} for name in self._key_schemas}
        self.calls: list[str] = []

    def _pk(self, table: str, key: Mapping[str, Any]) -> tuple:
        k = self._key(table, key)
        return tuple(k.values())

    async def get(self, table, key):
        self.calls.append("get")
        item = self.tables[table].get(self._pk(table, key))
        return from_dynamo(dict(item)) if item else None

    async def put(self, table, item):
        self.calls.append("put")
        body = {a: v for a, v in to_dynamo(dict(item)).items() if not (isinstance(v, set) and not v)}
        self.tables[table][self._pk(table, item)] = body

    async def update(self, table, key, changes, remove: Iterable[str] = (), require_existing=False, only_if=None):
        k = self._key(table, key)
        changes = {a: v for a, v in changes.items() if a not in k}
        remove = tuple(remove)
        if build_update_expression(changes, remove) is None:
            return False
        self.calls.append("update")
        pk = tuple(k.values())
        if pk not in self.tables[table]:
            if require_existing:
                raise NotFoundError(f"No item {table}{pk} to update.")
            self.tables[table][pk] = dict(k)
        item = self.tables[table][pk]
        for attr, allowed in (only_if or {}).items():
            if item.get(attr) not in [to_dynamo(v) for v in allowed]:
                raise InvalidStateError(f"Item {table}{pk} changed before the update was applied.")
        for attr, value in changes.items():
            if value is None:
                continue
            if isinstance(value, (set, frozenset)) and not value:
                item.pop(attr, None)
            else:
                item[attr] = to_dynamo(value)
        for attr in remove:
            item.pop(attr, None)
        return True

    async def delete(self, table, key):
        self.calls.append("delete")
        return self.tables[table].pop(self._pk(table, key), None) is not None

    async def query(self, table, attribute, value, index_name=None):
        self.calls.append("query")
        return [from_dynamo(dict(item)) for item in self.tables[table].values() if item.get(attribute) == value]

    def items(self, table: str) -> list[dict[str, Any]]:
        return [from_dynamo(dict(i)) for i in self.tables[table].values()]

    @property
    def writes(self) -> list[str]:
        return [c for c in self.calls if c in ("put", "update", "delete")]


@pytest.fixture
def object_store(settings) -> InMemoryObjectStore:
    return InMemoryObjectStore(settings)


@pytest.fixture
def record_store(settings) -> InMemoryRecordStore:
    return InMemoryRecordStore(settings)


@pytest.fixture
def document_repo(record_store, settings) -> DocumentRepository:
    return DocumentRepository(record_store, settings)


@pytest.fixture
def text_repo(record_store, settings) -> ExtractedTextRepository:
    return ExtractedTextRepository(record_store, settings)


@pytest.fixture
def question_repo(record_store, settings) -> QuestionRepository:
    return QuestionRepository(record_store, settings)


# ─────────────────────────────────────────────────────────────────────────────
# Remote collaborators: Textract, Bedrock, OpenSearch
# ─────────────────────────────────────────────────────────────────────────────

CLEANED_TEXT = "# Photosynthesis\n\nPlants convert light into chemical energy."
CLEANED_TAGS = ["biology", "plants", "energy", "chlorophyll"]


@pytest.fixture
def mock_ocr() -> MagicMock:
    ocr = MagicMock(spec=TextractClient)
    ocr.extract_sync = AsyncMock(return_value=OCRResult(text="Plants convert 1ight", confidence=92.5))
    ocr.extract_async = AsyncMock(return_value=AsyncJob(job_id="job-123", job_tag="v1-0000000000000000"))
    ocr.get_async_result = AsyncMock(
        return_value=OCRResult(text="Plants convert 1ight", confidence=85.0, page_count=12),
    )
    return ocr


@pytest.fixture
def mock_cleanup() -> MagicMock:
    cleanup = MagicMock(spec=TextCleanupClient)
    cleanup.clean = AsyncMock(return_value=CleanupResult(
        cleaned_text=CLEANED_TEXT,
        tags=list(CLEANED_TAGS),
        suggested_file_path="science/biology",
    ))
    return cleanup


@pytest.fixture
def mock_search() -> MagicMock:
    search = MagicMock(spec=SearchIndexer)
    search.enabled = False
    search.index_best_effort = AsyncMock(return_value=True)
    search.delete_best_effort = AsyncMock(return_value=True)
    search.search = AsyncMock(return_value=SearchResults())
    search.ensure_index = AsyncMock(return_value=None)
    return search


@pytest.fixture(params=["non_json_reply", "no_credentials"])
def unreliable_search(request, settings):
    """
    Real SearchIndexer pointed at a misbehaving domain:
      non_json_reply  200 with an HTML body (proxy / gateway page)
      no_credentials  the credential chain is empty, so signing fails
    """
    enabled = settings.model_copy(update={"opensearch_endpoint": "search-docs.us-east-1.es.amazonaws.com"})
    transport = httpx.MockTransport(lambda req: httpx.Response(200, text="<html>proxy</html>"))
    client = httpx.AsyncClient(transport=transport)

    if request.param == "non_json_reply":
        yield SearchIndexer(enabled, client=client, credentials=Credentials("AKIDTEST", "secret"))
        return

    session = MagicMock()
    session.get_credentials.return_value = None
    with patch("ascribe.search.opensearch.boto3.Session", return_value=session):
        yield SearchIndexer(enabled, client=client)


@pytest.fixture
def mock_generator() -> MagicMock:
    generator = MagicMock(spec=QuestionGenerator)

    async def _generate(text: str, num_questions: int) -> list[GeneratedQuestion]:
        return [
            GeneratedQuestion(
                question=f"Question {i}?",
                answer="Light",
                choices=["Light", "Sound", "Heat", "Wind"],
                tags=["biology"],
            )
            for i in range(num_questions)
        ]

    generator.generate = AsyncMock(side_effect=_generate)
    return generator


# ─────────────────────────────────────────────────────────────────────────────
# Services wired on the in-memory stores
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def pipeline(settings, object_store, document_repo, text_repo, mock_ocr, mock_cleanup, mock_search) -> DocumentPipeline:
    return DocumentPipeline(settings, object_store, document_repo, text_repo, mock_ocr, mock_cleanup, mock_search)


@pytest.fixture
def document_service(settings, object_store, document_repo, text_repo, question_repo, mock_search) -> DocumentService:
    return DocumentService(settings, object_store, document_repo, text_repo, question_repo, mock_search)


@pytest.fixture
def question_service(
    settings, object_store, document_repo, text_repo, question_repo, mock_generator,
) -> QuestionService:
    return QuestionService(settings, object_store, document_repo, text_repo, question_repo, mock_generator)


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_jpeg_bytes() -> bytes:
    """JPEG SOI/APP0 header padded to ~2 MB."""
    header = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00"
    return header + b"\x00" * (2 * 1024 * 1024 - len(header))


@pytest.fixture
def large_pdf_bytes() -> bytes:
    """20 MB PDF — above the 5 MiB sync ceiling."""
    header = b"%PDF-1.4\n"
    return header + b"x" * (20 * 1024 * 1024 - len(header))


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid PDF (%PDF header)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"%%EOF"
    )


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair + JWKS for signing test JWTs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    """PEM-encoded private key bytes (used by jose.jwt.encode)."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """What the user pool's /.well-known/jwks.json returns."""
    numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        return base64.urlsafe_b64encode(n.to_bytes((n.bit_length() + 7) // 8, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(numbers.n),
                "e":   _b64url(numbers.e),
            }
        ]
    }


@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

        token = make_token()
        token = make_token(token_use="access")
        token = make_token(expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(
        user_id:   str = TEST_USER_ID,
        token_use: str = "id",
        expired:   bool = False,
        audience:  str = TEST_AUDIENCE,
        issuer:    str = TEST_ISSUER,
        kid:       str = TEST_KID,
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "sub":       user_id,
            "email":     "reader@example.com",
            "iss":       issuer,
            "token_use": token_use,
            "exp":       now - 60 if expired else now + 3600,
            "iat":       now,
        }
        if token_use == "id":
            claims["aud"] = audience
        else:
            claims["client_id"] = audience
        return jose_jwt.encode(claims, rsa_private_key_pem, algorithm="RS256", headers={"kid": kid})

    return _build


@pytest.fixture
def user_payload():
    from ascribe.auth.token import TokenPayload
    return TokenPayload(
        sub=TEST_USER_ID,
        email="reader@example.com",
        exp=int(time.time()) + 3600,
        iss=TEST_ISSUER,
    )


@pytest.fixture
def user_id() -> str:
    return TEST_USER_ID


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher():
    """Mocked TaskPublisher — records calls without touching Celery/broker."""
    from ascribe.workers.publisher import TaskPublisher
    publisher = MagicMock(spec=TaskPublisher)
    publisher.publish_upload = AsyncMock(return_value="task-upload-1")
    publisher.publish_job_completion = AsyncMock(return_value="task-ocr-1")
    return publisher


@pytest.fixture
def app_with_overrides(settings, user_payload, pipeline, document_service, question_service, mock_search, mock_publisher):
    """
    FastAPI app with every external dependency overridden:
      - get_current_user → user_payload (no JWT verification)
      - services         → wired on the in-memory stores
      - search           → mock_search
      - publisher        → mock_publisher
    """
    from ascribe.api import dependencies as deps
    from ascribe.auth.token import get_current_user
    from ascribe.core.config import get_settings
    from ascribe.main import create_app

    app = create_app(settings)
    app.dependency_overrides[get_settings]              = lambda: settings
    app.dependency_overrides[get_current_user]          = lambda: user_payload
    app.dependency_overrides[deps.get_pipeline]         = lambda: pipeline
    app.dependency_overrides[deps.get_document_service] = lambda: document_service
    app.dependency_overrides[deps.get_question_service] = lambda: question_service
    app.dependency_overrides[deps.get_search_indexer]   = lambda: mock_search
    app.dependency_overrides[deps.get_task_publisher]   = lambda: mock_publisher

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app (httpx ASGITransport)."""
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
