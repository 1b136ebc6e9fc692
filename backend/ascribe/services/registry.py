"""
Process-wide service graph.

Built once per process from Settings and shared by the API dependencies and
the Celery tasks. Gateways hold no per-request state, so one instance of
each is enough.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import aioboto3

from ascribe.core.config import Settings, get_settings
from ascribe.llm.cleanup import TextCleanupClient
from ascribe.llm.questions import QuestionGenerator
from ascribe.processing.job_tag import JobTagResolver
from ascribe.processing.ocr import TextractClient
from ascribe.records.dynamodb import RecordStoreGateway
from ascribe.records.repositories import (
    DocumentRepository,
    ExtractedTextRepository,
    QuestionRepository,
)
from ascribe.search.opensearch import SearchIndexer
from ascribe.services.documents import DocumentService
from ascribe.services.pipeline import DocumentPipeline
from ascribe.services.questions import QuestionService
from ascribe.storage.s3 import ObjectStoreGateway


@dataclass
class ServiceRegistry:
    settings:  Settings
    objects:   ObjectStoreGateway
    search:    SearchIndexer
    pipeline:  DocumentPipeline
    documents: DocumentService
    questions: QuestionService


def build_services(settings: Settings, session: aioboto3.Session | None = None) -> ServiceRegistry:
    session = session or aioboto3.Session()

    objects = ObjectStoreGateway(settings, session=session)
    records = RecordStoreGateway(settings, session=session)
    documents = DocumentRepository(records, settings)
    texts = ExtractedTextRepository(records, settings)
    questions = QuestionRepository(records, settings)
    search = SearchIndexer(settings)

    pipeline = DocumentPipeline(
        settings,
        objects,
        documents,
        texts,
        TextractClient(settings),
        TextCleanupClient(settings),
        search,
        resolver=JobTagResolver(objects, documents),
    )
    return ServiceRegistry(
        settings=settings,
        objects=objects,
        search=search,
        pipeline=pipeline,
        documents=DocumentService(settings, objects, documents, texts, questions, search),
        questions=QuestionService(settings, objects, documents, texts, questions, QuestionGenerator(settings)),
    )


@lru_cache(maxsize=1)
def get_services() -> ServiceRegistry:
    return build_services(get_settings())
