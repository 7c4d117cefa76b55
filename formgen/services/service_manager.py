"""
Service lifecycle: the bundle of templates offered to one client plus the
client's intake answers.

draft -> intake_sent -> intake_submitted -> documents_ready -> completed
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from formgen.exceptions import InvalidStateError, NotFoundError, ValidationError
from formgen.models.database_models import Service, ServiceStatus, Template
from formgen.services.template_manager import utcnow

logger = logging.getLogger(__name__)

# Statuses from which each target status may be entered
_ALLOWED_FROM: Dict[ServiceStatus, Tuple[ServiceStatus, ...]] = {
    ServiceStatus.INTAKE_SENT: (ServiceStatus.DRAFT,),
    ServiceStatus.INTAKE_SUBMITTED: (ServiceStatus.INTAKE_SENT, ServiceStatus.INTAKE_SUBMITTED),
    ServiceStatus.DOCUMENTS_READY: (ServiceStatus.INTAKE_SUBMITTED, ServiceStatus.DOCUMENTS_READY),
    ServiceStatus.COMPLETED: (ServiceStatus.DOCUMENTS_READY,),
}

GENERATION_STATUSES = (ServiceStatus.INTAKE_SUBMITTED, ServiceStatus.DOCUMENTS_READY)


class ServiceManager:
    """Creates services and moves them through their lifecycle."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _find(self, service_id: str) -> Optional[Service]:
        result = await self.db.execute(
            select(Service)
            .where(Service.id == service_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_service(self, service_id: str) -> Service:
        service = await self._find(service_id)
        if service is None:
            raise NotFoundError(f"Service {service_id} not found")
        return service

    async def create_service(
        self,
        name: str,
        description: Optional[str],
        template_ids: Sequence[str],
        owner_id: str,
    ) -> Service:
        """Create a ``draft`` service.  Every template id must exist."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Service name is required")
        ids: List[str] = list(dict.fromkeys(template_ids or []))
        if not ids:
            raise ValidationError("A service needs at least one template")

        result = await self.db.execute(select(Template.id).where(Template.id.in_(ids)))
        found = set(result.scalars().all())
        missing = [tid for tid in ids if tid not in found]
        if missing:
            raise NotFoundError(f"Template(s) not found: {', '.join(missing)}")

        service = Service(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            owner_id=owner_id,
            template_ids=ids,
            status=ServiceStatus.DRAFT,
        )
        self.db.add(service)
        await self.db.flush()
        logger.info("Created service %s with %d template(s)", service.id, len(ids))
        return service

    async def _advance(self, service_id: str, new: ServiceStatus, **values: Any) -> Service:
        allowed = _ALLOWED_FROM[new]
        result = await self.db.execute(
            update(Service)
            .where(Service.id == service_id, Service.status.in_(allowed))
            .values(status=new, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            service = await self.get_service(service_id)
            raise InvalidStateError(
                f"Service {service_id} is {service.status.value}; cannot move to {new.value}"
            )
        logger.info("Service %s -> %s", service_id, new.value)
        return await self.get_service(service_id)

    async def mark_intake_sent(self, service_id: str) -> Service:
        return await self._advance(service_id, ServiceStatus.INTAKE_SENT)

    async def submit_intake(self, service_id: str, client_data: Dict[str, Any]) -> Service:
        """Record the client's answers.  Resubmission replaces the previous answers."""
        if not isinstance(client_data, dict):
            raise ValidationError("client_data must be an object of field -> value")
        return await self._advance(
            service_id,
            ServiceStatus.INTAKE_SUBMITTED,
            client_data=client_data,
            intake_submitted_at=utcnow(),
        )

    async def mark_documents_ready(self, service_id: str) -> Service:
        return await self._advance(service_id, ServiceStatus.DOCUMENTS_READY)

    async def complete_service(self, service_id: str) -> Service:
        return await self._advance(service_id, ServiceStatus.COMPLETED)

    async def require_generation_ready(self, service_id: str) -> Service:
        """Return the service if its intake can be used for generation."""
        service = await self.get_service(service_id)
        if service.status not in GENERATION_STATUSES:
            raise InvalidStateError(
                f"Service {service_id} is {service.status.value}; submit the intake before generating"
            )
        return service
