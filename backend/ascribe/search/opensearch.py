"""
OpenSearch Search Indexer Gateway

Requests go over httpx, signed with SigV4 for the ``es`` service using
botocore's signer and the default credential chain.

Index ``documents`` (one doc per Document, ``_id`` = documentId):

    text, tags, filePath, originalFilename, contentType, status   searchable / filterable
    userId, documentId                                             keyword, used for scoping

Indexing is a side channel of the pipeline. ``index_best_effort`` and
``delete_best_effort`` log failures and return False instead of raising;
the plain ``index`` / ``delete`` / ``search`` raise SearchIndexError.
With no endpoint configured every operation is skipped.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import boto3
import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.exceptions import BotoCoreError

from ascribe.core.config import Settings
from ascribe.core.errors import PreconditionError, SearchIndexError

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ["text", "tags^2", "filePath", "originalFilename"]

INDEX_MAPPING: dict[str, Any] = {
    "settings": {"number_of_shards": 1, "number_of_replicas": 1},
    "mappings": {
        "properties": {
            "text":             {"type": "text"},
            "tags":             {"type": "keyword"},
            "filePath":         {"type": "text"},
            "originalFilename": {"type": "text"},
            "contentType":      {"type": "keyword"},
            "status":           {"type": "keyword"},
            "userId":           {"type": "keyword"},
            "documentId":       {"type": "keyword"},
        }
    },
}


@dataclass
class SearchHit:
    id:     str
    score:  float
    source: dict[str, Any]


@dataclass
class SearchResults:
    total: int = 0
    hits:  list[SearchHit] = field(default_factory=list)


class SearchIndexer:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        credentials=None,
    ) -> None:
        self._settings = settings
        self._endpoint = settings.opensearch_endpoint.rstrip("/")
        if self._endpoint and not self._endpoint.startswith("http"):
            self._endpoint = f"https://{self._endpoint}"
        self._index = settings.opensearch_index
        self._client = client
        self._credentials = credentials

        if not self.enabled:
            logger.info("Search indexing disabled | reason=no endpoint configured")

    @property
    def enabled(self) -> bool:
        return bool(self._endpoint)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _signed_headers(self, method: str, url: str, body: bytes | None) -> dict[str, str]:
        credentials = self._credentials or boto3.Session().get_credentials()
        headers = {"Content-Type": "application/json"} if body is not None else {}
        request = AWSRequest(method=method, url=url, data=body, headers=headers)
        SigV4Auth(credentials, "es", self._settings.aws_region).add_auth(request)
        return dict(request.headers.items())

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payload: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> dict[str, Any] | None:
        """Returns None for a 404 when ``allow_404`` is set."""
        url = f"{self._endpoint}{path}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None

        try:
            headers = self._signed_headers(method, url, body)
            if self._client is not None:
                resp = await self._client.request(method, url, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._settings.opensearch_timeout_seconds) as client:
                    resp = await client.request(method, url, content=body, headers=headers)
        except (httpx.HTTPError, BotoCoreError) as exc:
            raise SearchIndexError(operation, url, exc) from exc

        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            raise SearchIndexError(operation, url, RuntimeError(f"HTTP {resp.status_code}: {resp.text[:200]}"))
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise SearchIndexError(operation, url, exc) from exc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def ensure_index(self) -> None:
        if not self.enabled:
            return
        existing = await self._request("HEAD", f"/{self._index}", "index_exists", allow_404=True)
        if existing is None:
            await self._request("PUT", f"/{self._index}", "create_index", INDEX_MAPPING)
            logger.info("Search index created | index=%s", self._index)

    async def index(self, document_id: str, body: dict[str, Any]) -> None:
        if not document_id:
            raise PreconditionError("'document_id' is required.", field="document_id")
        if not self.enabled:
            return
        await self._request("PUT", f"/{self._index}/_doc/{document_id}", "index_document", body)
        logger.info("Search index ok | doc=%s", document_id)

    async def delete(self, document_id: str) -> None:
        if not document_id:
            raise PreconditionError("'document_id' is required.", field="document_id")
        if not self.enabled:
            return
        await self._request("DELETE", f"/{self._index}/_doc/{document_id}", "delete_document", allow_404=True)
        logger.info("Search delete ok | doc=%s", document_id)

    async def search(self, query: str, user_id: str, size: int = 20, offset: int = 0) -> SearchResults:
        if not user_id:
            raise PreconditionError("'user_id' is required.", field="user_id")
        if not query or not query.strip():
            raise PreconditionError("Search query is empty.", field="q")
        if not self.enabled:
            return SearchResults()

        payload = {
            "from": offset,
            "size": size,
            "query": {
                "bool": {
                    "must":   {"multi_match": {"query": query, "fields": SEARCH_FIELDS}},
                    "filter": {"term": {"userId": user_id}},
                }
            },
        }
        data = await self._request("POST", f"/{self._index}/_search", "search", payload) or {}
        if not isinstance(data, dict):
            raise SearchIndexError("search", self._index, TypeError(f"unexpected response {type(data).__name__}"))
        hits = data.get("hits", {})
        total = hits.get("total", 0)
        return SearchResults(
            total=total.get("value", 0) if isinstance(total, dict) else int(total or 0),
            hits=[
                SearchHit(id=h.get("_id", ""), score=float(h.get("_score") or 0.0), source=h.get("_source", {}))
                for h in hits.get("hits", [])
            ],
        )

    # ------------------------------------------------------------------
    # Best-effort wrappers used by the pipeline
    # ------------------------------------------------------------------

    async def index_best_effort(self, document_id: str, body: dict[str, Any]) -> bool:
        try:
            await self.index(document_id, body)
        except Exception:
            logger.warning("Search index failed, continuing | doc=%s", document_id, exc_info=True)
            return False
        return self.enabled

    async def delete_best_effort(self, document_id: str) -> bool:
        try:
            await self.delete(document_id)
        except Exception:
            logger.warning("Search delete failed, continuing | doc=%s", document_id, exc_info=True)
            return False
        return self.enabled
