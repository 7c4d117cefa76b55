"""
Storage endpoints.

PUT  /{path}            - signed upload target; emits a finalize event in the background
POST /events/finalize   - finalize notification from an external storage system
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status

from formgen.config import settings
from formgen.dependencies.services import (
    get_completion_client,
    get_session_factory,
    get_storage,
    get_template_manager,
    get_text_extractor,
)
from formgen.models.schemas import ParseOutcomeResponse, StorageEvent
from formgen.routers.templates import outcome_response
from formgen.services.field_extractor import CompletionClient, FieldExtractor
from formgen.services.storage import LocalStorage
from formgen.services.template_manager import ParseOutcome, TemplateManager
from formgen.services.text_extractor import DocumentTextExtractor

logger = logging.getLogger(__name__)

router = APIRouter()


async def finalize_upload(
    storage_path: str,
    session_factory,
    storage: LocalStorage,
    text_extractor: DocumentTextExtractor,
    client: CompletionClient,
) -> ParseOutcome:
    """Run the storage-finalize handler in its own session."""
    async with session_factory() as session:
        manager = TemplateManager(session, storage, text_extractor, FieldExtractor(client))
        try:
            outcome = await manager.on_upload_completed(storage_path)
            await session.commit()
        except Exception:
            await session.rollback()
            logger.error("Finalize handler failed for %s", storage_path, exc_info=True)
            raise
    logger.info("Finalize event for %s: %s", storage_path, outcome.outcome.value)
    return outcome


@router.post("/events/finalize", response_model=ParseOutcomeResponse)
async def storage_finalize_event(
    event: StorageEvent,
    manager: TemplateManager = Depends(get_template_manager),
) -> ParseOutcomeResponse:
    """
    Object-finalize trigger.  Redelivery is safe: only the first delivery for a
    template parses it, later ones report ``skipped``.
    """
    return outcome_response(await manager.on_upload_completed(event.name))


@router.put("/{object_path:path}", status_code=status.HTTP_201_CREATED)
async def upload_object(
    object_path: str,
    request: Request,
    background_tasks: BackgroundTasks,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: LocalStorage = Depends(get_storage),
    text_extractor: DocumentTextExtractor = Depends(get_text_extractor),
    client: CompletionClient = Depends(get_completion_client),
    session_factory=Depends(get_session_factory),
    manager: TemplateManager = Depends(get_template_manager),
):
    """Accept the bytes for a signed upload URL.  Each URL takes exactly one upload."""
    if not storage.verify_upload(object_path, expires, signature):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Upload URL is invalid or has expired.",
        )
    await manager.check_upload_target(object_path)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > settings.MAX_FILE_SIZE:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=(
                    f"File exceeds the {settings.MAX_FILE_SIZE // (1024 * 1024)} MB "
                    "size limit."
                ),
            )
    if not body:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Upload body is empty.",
        )

    await storage.save(object_path, bytes(body))
    background_tasks.add_task(
        finalize_upload, object_path, session_factory, storage, text_extractor, client
    )
    return {"path": object_path, "size": len(body)}
