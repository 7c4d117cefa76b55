"""
Override review endpoints.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from formgen.dependencies.auth import get_current_user_id
from formgen.dependencies.services import get_override_manager
from formgen.models.schemas import OverrideResponse, OverrideReviewRequest
from formgen.services.override_manager import OverrideManager

router = APIRouter()


@router.post("/{override_id}/approve", response_model=OverrideResponse)
async def approve_override(
    override_id: str,
    body: Optional[OverrideReviewRequest] = None,
    reviewer_id: str = Depends(get_current_user_id),
    manager: OverrideManager = Depends(get_override_manager),
):
    return await manager.approve(override_id, reviewer_id, body.notes if body else None)


@router.post("/{override_id}/reject", response_model=OverrideResponse)
async def reject_override(
    override_id: str,
    body: Optional[OverrideReviewRequest] = None,
    reviewer_id: str = Depends(get_current_user_id),
    manager: OverrideManager = Depends(get_override_manager),
):
    return await manager.reject(override_id, reviewer_id, body.notes if body else None)
