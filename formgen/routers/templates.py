"""
Template endpoints.

POST   /upload                            - register an upload, get a signed URL
GET    /                                  - list templates
GET    /{id}                              - template with extracted fields
POST   /{id}/reparse                      - explicit re-parse of a parsed/error template
PUT    /{id}/fields                       - administrative field edit (etag + lock)
POST   /{id}/lock, /{id}/lock/refresh     - editor lock
DELETE /{id}/lock                         - release the editor lock
GET    /{id}/versions                     - version history
POST   /{id}/versions/{v}/rollback        - restore a version as a new version
GET    /{id}/audit                        - field edit and rollback audit trail
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from formgen.dependencies.auth import get_current_user_id
from formgen.dependencies.services import get_template_manager
from formgen.models.database_models import TemplateStatus
from formgen.models.schemas import (
    AuditEventResponse,
    FieldsUpdateRequest,
    LockResponse,
    ParseOutcomeResponse,
    RollbackRequest,
    TemplateResponse,
    TemplateVersionResponse,
    UploadRegistrationRequest,
    UploadRegistrationResponse,
)
from formgen.services.template_manager import EditorLock, ParseOutcome, TemplateManager

logger = logging.getLogger(__name__)

router = APIRouter()


def outcome_response(outcome: ParseOutcome) -> ParseOutcomeResponse:
    return ParseOutcomeResponse(
        outcome=outcome.outcome.value,
        template_id=outcome.template_id,
        status=outcome.status,
        message=outcome.message,
        field_count=outcome.field_count,
    )


def _lock_response(lock: EditorLock) -> LockResponse:
    return LockResponse(
        template_id=lock.template_id,
        holder_id=lock.holder_id,
        acquired_at=lock.acquired_at,
        expires_at=lock.expires_at,
    )


# ---------------------------------------------------------------------------
# Upload + read
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=UploadRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_upload(
    body: UploadRegistrationRequest,
    manager: TemplateManager = Depends(get_template_manager),
) -> UploadRegistrationResponse:
    """
    Create a template record and return a time-limited upload URL.

    PUT the file bytes to ``upload_url``; parsing starts once they land.
    """
    registration = await manager.register_upload(body.file_name, body.file_type, body.template_name)
    return UploadRegistrationResponse(
        template_id=registration.template_id,
        upload_url=registration.upload_url,
        storage_path=registration.storage_path,
        expires_at=registration.expires_at,
    )


@router.get("/", response_model=List[TemplateResponse])
async def list_templates(
    status_filter: Optional[TemplateStatus] = Query(None, alias="status"),
    manager: TemplateManager = Depends(get_template_manager),
):
    return await manager.list_templates(status_filter)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: str,
    manager: TemplateManager = Depends(get_template_manager),
):
    return await manager.get_template(template_id)


@router.post("/{template_id}/reparse", response_model=ParseOutcomeResponse)
async def reparse_template(
    template_id: str,
    manager: TemplateManager = Depends(get_template_manager),
) -> ParseOutcomeResponse:
    """Restart parsing of a ``parsed`` or ``error`` template and wait for the result."""
    return outcome_response(await manager.request_reparse(template_id))


# ---------------------------------------------------------------------------
# Editing
# ---------------------------------------------------------------------------

@router.put("/{template_id}/fields", response_model=TemplateResponse)
async def update_fields(
    template_id: str,
    body: FieldsUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    manager: TemplateManager = Depends(get_template_manager),
):
    return await manager.update_fields(template_id, body.fields, body.etag, user_id, body.reason)


@router.post("/{template_id}/lock", response_model=LockResponse)
async def acquire_lock(
    template_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TemplateManager = Depends(get_template_manager),
) -> LockResponse:
    return _lock_response(await manager.acquire_lock(template_id, user_id))


@router.post("/{template_id}/lock/refresh", response_model=LockResponse)
async def refresh_lock(
    template_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TemplateManager = Depends(get_template_manager),
) -> LockResponse:
    return _lock_response(await manager.refresh_lock(template_id, user_id))


@router.delete("/{template_id}/lock", status_code=status.HTTP_204_NO_CONTENT)
async def release_lock(
    template_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: TemplateManager = Depends(get_template_manager),
) -> Response:
    await manager.release_lock(template_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{template_id}/versions", response_model=List[TemplateVersionResponse])
async def list_versions(
    template_id: str,
    manager: TemplateManager = Depends(get_template_manager),
):
    return await manager.list_versions(template_id)


@router.post("/{template_id}/versions/{version}/rollback", response_model=TemplateResponse)
async def rollback_version(
    template_id: str,
    version: int,
    body: RollbackRequest,
    user_id: str = Depends(get_current_user_id),
    manager: TemplateManager = Depends(get_template_manager),
):
    return await manager.rollback(template_id, version, user_id, body.etag, body.reason)


@router.get("/{template_id}/audit", response_model=List[AuditEventResponse])
async def template_audit_trail(
    template_id: str,
    manager: TemplateManager = Depends(get_template_manager),
):
    """Who changed the field set, when, and what changed."""
    return await manager.audit_trail(template_id)
