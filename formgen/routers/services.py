"""
Service endpoints: the service lifecycle, generation from the stored intake,
customer override submission, and the override audit trail.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from formgen.dependencies.auth import get_current_user_id
from formgen.dependencies.services import (
    get_document_assembler,
    get_override_manager,
    get_service_manager,
)
from formgen.models.database_models import OverrideStatus
from formgen.models.schemas import (
    AuditEventResponse,
    GeneratedDocumentResult,
    IntakeSubmitRequest,
    OverrideCreateRequest,
    OverrideResponse,
    ServiceCreateRequest,
    ServiceGenerateRequest,
    ServiceResponse,
)
from formgen.routers.documents import batch_response
from formgen.services.document_assembler import DocumentAssembler
from formgen.services.override_manager import OverrideManager
from formgen.services.service_manager import ServiceManager

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.post("/", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    body: ServiceCreateRequest,
    user_id: str = Depends(get_current_user_id),
    manager: ServiceManager = Depends(get_service_manager),
):
    return await manager.create_service(body.name, body.description, body.template_ids, user_id)


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(
    service_id: str,
    manager: ServiceManager = Depends(get_service_manager),
):
    return await manager.get_service(service_id)


@router.post("/{service_id}/intake-sent", response_model=ServiceResponse)
async def mark_intake_sent(
    service_id: str,
    manager: ServiceManager = Depends(get_service_manager),
):
    return await manager.mark_intake_sent(service_id)


@router.post("/{service_id}/intake", response_model=ServiceResponse)
async def submit_intake(
    service_id: str,
    body: IntakeSubmitRequest,
    manager: ServiceManager = Depends(get_service_manager),
):
    return await manager.submit_intake(service_id, body.client_data)


@router.post("/{service_id}/complete", response_model=ServiceResponse)
async def complete_service(
    service_id: str,
    manager: ServiceManager = Depends(get_service_manager),
):
    return await manager.complete_service(service_id)


@router.post("/{service_id}/generate", response_model=List[GeneratedDocumentResult])
async def generate_for_service(
    service_id: str,
    body: Optional[ServiceGenerateRequest] = None,
    manager: ServiceManager = Depends(get_service_manager),
    assembler: DocumentAssembler = Depends(get_document_assembler),
) -> List[GeneratedDocumentResult]:
    """
    Generate every template of the service from its submitted intake.

    Uses all approved overrides of the service unless ``override_ids`` lists
    specific ones.  The service moves to ``documents_ready`` once at least one
    document was generated.
    """
    service = await manager.require_generation_ready(service_id)
    results = await assembler.generate_batch(
        service.template_ids,
        service.client_data or {},
        override_ids=body.override_ids if body else None,
        service_id=service_id,
    )
    if any(item.result is not None for item in results):
        await manager.mark_documents_ready(service_id)
    return batch_response(results)


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------

@router.post(
    "/{service_id}/overrides",
    response_model=OverrideResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_override(
    service_id: str,
    body: OverrideCreateRequest,
    user_id: str = Depends(get_current_user_id),
    manager: OverrideManager = Depends(get_override_manager),
):
    """Submit a customer override.  It stays ``pending`` until an administrator reviews it."""
    return await manager.create_override(
        service_id,
        body.override_type,
        body.payload,
        created_by=user_id,
        template_id=body.template_id,
        reason=body.reason,
    )


@router.get("/{service_id}/overrides", response_model=List[OverrideResponse])
async def list_overrides(
    service_id: str,
    status_filter: Optional[OverrideStatus] = Query(None, alias="status"),
    services: ServiceManager = Depends(get_service_manager),
    manager: OverrideManager = Depends(get_override_manager),
):
    await services.get_service(service_id)
    return await manager.list_overrides(service_id, status_filter)


@router.get("/{service_id}/audit", response_model=List[AuditEventResponse])
async def service_audit_trail(
    service_id: str,
    manager: OverrideManager = Depends(get_override_manager),
):
    """Override submissions and reviews for the service."""
    return await manager.audit_trail(service_id)
