"""
FastAPI dependencies that build pipeline components from ``settings``.

Tests replace ``get_storage``, ``get_completion_client`` and
``get_session_factory`` through ``app.dependency_overrides``.
"""
from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from formgen.database import AsyncSessionLocal, get_db
from formgen.services.document_assembler import DocumentAssembler
from formgen.services.field_extractor import CompletionClient, FieldExtractor, OllamaCompletionClient
from formgen.services.override_manager import OverrideManager
from formgen.services.service_manager import ServiceManager
from formgen.services.storage import LocalStorage, StorageBackend
from formgen.services.template_manager import TemplateManager
from formgen.services.text_extractor import DocumentTextExtractor


def get_storage() -> StorageBackend:
    return LocalStorage()


def get_completion_client() -> CompletionClient:
    return OllamaCompletionClient()


def get_text_extractor() -> DocumentTextExtractor:
    return DocumentTextExtractor()


def get_session_factory():
    """Session factory for work that outlives the request, e.g. background parsing."""
    return AsyncSessionLocal


def get_template_manager(
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
    text_extractor: DocumentTextExtractor = Depends(get_text_extractor),
    client: CompletionClient = Depends(get_completion_client),
) -> TemplateManager:
    return TemplateManager(db, storage, text_extractor, FieldExtractor(client))


def get_service_manager(db: AsyncSession = Depends(get_db)) -> ServiceManager:
    return ServiceManager(db)


def get_override_manager(db: AsyncSession = Depends(get_db)) -> OverrideManager:
    return OverrideManager(db)


def get_document_assembler(
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
) -> DocumentAssembler:
    return DocumentAssembler(db, storage, OverrideManager(db))
