"""
Customer override approval workflow.

Every override is created ``pending``.  Only an explicit approve/reject moves
it, and that move is a conditional update on ``status = 'pending'`` so two
racing reviewers cannot both win.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from formgen.exceptions import InvalidStateError, NotFoundError, ValidationError
from formgen.models.database_models import (
    AuditEvent,
    CustomerOverride,
    OverrideStatus,
    OverrideType,
    Service,
    Template,
)
from formgen.models.schemas import OVERRIDE_PAYLOAD_MODELS
from formgen.services.audit_log import OVERRIDE_APPROVED, OVERRIDE_CREATED, OVERRIDE_REJECTED, AuditLog
from formgen.services.template_manager import utcnow
from formgen.utils.field_names import normalize_key

logger = logging.getLogger(__name__)


class OverrideManager:
    """Creates, reviews and lists customer overrides."""

    def __init__(self, db: AsyncSession, audit_log: Optional[AuditLog] = None) -> None:
        self.db = db
        self.audit = audit_log or AuditLog(db)

    async def _find(self, override_id: str) -> Optional[CustomerOverride]:
        result = await self.db.execute(
            select(CustomerOverride)
            .where(CustomerOverride.id == override_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_override(self, override_id: str) -> CustomerOverride:
        override = await self._find(override_id)
        if override is None:
            raise NotFoundError(f"Override {override_id} not found")
        return override

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_override(
        self,
        service_id: str,
        override_type: Any,
        payload: Dict[str, Any],
        created_by: str,
        template_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> CustomerOverride:
        """
        Record a customer request.  The status is always ``pending``.

        Raises:
            NotFoundError:   Unknown service.
            ValidationError: Bad type, bad payload, or a template outside the service.
        """
        result = await self.db.execute(select(Service).where(Service.id == service_id))
        service = result.scalar_one_or_none()
        if service is None:
            raise NotFoundError(f"Service {service_id} not found")

        try:
            kind = OverrideType(override_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown override type {override_type!r}", original_error=exc) from exc

        if template_id is not None and template_id not in (service.template_ids or []):
            raise ValidationError(f"Template {template_id} is not part of service {service_id}")

        try:
            parsed = OVERRIDE_PAYLOAD_MODELS[kind].model_validate(payload or {})
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            raise ValidationError(
                f"Invalid {kind.value} payload: {first.get('msg')}", original_error=exc
            ) from exc

        target_ids = [template_id] if template_id else list(service.template_ids or [])
        collisions: List[str] = []
        if kind == OverrideType.ADD_FIELD:
            collisions = await self._colliding_keys(parsed.name, target_ids)

        override = CustomerOverride(
            id=str(uuid.uuid4()),
            service_id=service_id,
            template_id=template_id,
            override_type=kind,
            payload=parsed.model_dump(mode="json", exclude_none=True),
            status=OverrideStatus.PENDING,
            collisions=collisions or None,
            reason=reason,
            created_by=created_by,
        )
        self.db.add(override)
        await self.db.flush()
        await self.audit.record(
            OVERRIDE_CREATED,
            "service",
            service_id,
            created_by,
            reason=reason,
            details={
                "override_id": override.id,
                "override_type": kind.value,
                "template_id": template_id,
                "payload": override.payload,
                "collisions": collisions,
            },
        )

        if collisions:
            logger.warning(
                "Override %s adds field %r which collides with existing key(s) %s",
                override.id,
                parsed.name,
                collisions,
            )
        logger.info("Created %s override %s for service %s (pending)", kind.value, override.id, service_id)
        return override

    async def _colliding_keys(self, name: str, template_ids: Sequence[str]) -> List[str]:
        """Existing field keys in *template_ids* that match *name* ignoring case and separators."""
        if not template_ids:
            return []
        result = await self.db.execute(select(Template).where(Template.id.in_(list(template_ids))))
        wanted = normalize_key(name)
        found: List[str] = []
        for template in result.scalars().all():
            for field in template.extracted_fields or []:
                key = field.get("name", "")
                if normalize_key(key) == wanted and key not in found:
                    found.append(key)
        return found

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def approve(self, override_id: str, reviewer_id: str, notes: Optional[str] = None) -> CustomerOverride:
        return await self._review(override_id, OverrideStatus.APPROVED, reviewer_id, notes)

    async def reject(self, override_id: str, reviewer_id: str, notes: Optional[str] = None) -> CustomerOverride:
        return await self._review(override_id, OverrideStatus.REJECTED, reviewer_id, notes)

    async def _review(
        self,
        override_id: str,
        new_status: OverrideStatus,
        reviewer_id: str,
        notes: Optional[str],
    ) -> CustomerOverride:
        result = await self.db.execute(
            update(CustomerOverride)
            .where(
                CustomerOverride.id == override_id,
                CustomerOverride.status == OverrideStatus.PENDING,
            )
            .values(
                status=new_status,
                reviewed_by=reviewer_id,
                reviewed_at=utcnow(),
                review_notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            existing = await self.get_override(override_id)
            raise InvalidStateError(
                f"Override {override_id} is already {existing.status.value}; only pending overrides can be reviewed"
            )

        logger.info("Override %s %s by %s", override_id, new_status.value, reviewer_id)
        override = await self.get_override(override_id)
        await self.audit.record(
            OVERRIDE_APPROVED if new_status == OverrideStatus.APPROVED else OVERRIDE_REJECTED,
            "service",
            override.service_id,
            reviewer_id,
            reason=notes,
            details={"override_id": override_id, "override_type": override.override_type.value},
        )
        return override

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_overrides(
        self, service_id: str, status: Optional[OverrideStatus] = None
    ) -> List[CustomerOverride]:
        query = (
            select(CustomerOverride)
            .where(CustomerOverride.service_id == service_id)
            .order_by(CustomerOverride.created_at, CustomerOverride.id)
        )
        if status is not None:
            query = query.where(CustomerOverride.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def approved_overrides_for(
        self, service_id: str, template_id: Optional[str] = None
    ) -> List[CustomerOverride]:
        """Approved overrides of a service, optionally narrowed to those that apply to *template_id*."""
        overrides = await self.list_overrides(service_id, OverrideStatus.APPROVED)
        if template_id is None:
            return overrides
        return [o for o in overrides if o.template_id in (None, template_id)]

    async def approved_by_ids(
        self, override_ids: Sequence[str], service_id: Optional[str] = None
    ) -> List[CustomerOverride]:
        """
        Load explicitly requested overrides.

        Raises:
            NotFoundError:     An id is unknown or belongs to another service.
            InvalidStateError: An override is not approved.
        """
        ids = list(dict.fromkeys(override_ids))
        if not ids:
            return []
        result = await self.db.execute(
            select(CustomerOverride)
            .where(CustomerOverride.id.in_(ids))
            .order_by(CustomerOverride.created_at, CustomerOverride.id)
        )
        overrides = list(result.scalars().all())
        by_id = {o.id: o for o in overrides}

        for override_id in ids:
            override = by_id.get(override_id)
            if override is None or (service_id is not None and override.service_id != service_id):
                raise NotFoundError(f"Override {override_id} not found")
            if override.status != OverrideStatus.APPROVED:
                raise InvalidStateError(
                    f"Override {override_id} is {override.status.value}; only approved overrides can be applied"
                )
        return overrides

    async def audit_trail(self, service_id: str) -> List[AuditEvent]:
        """Override creation and review events of a service, oldest first."""
        result = await self.db.execute(select(Service.id).where(Service.id == service_id))
        if result.scalar_one_or_none() is None:
            raise NotFoundError(f"Service {service_id} not found")
        return await self.audit.list_events("service", service_id)
