"""
Audit trail for field edits, rollbacks and override reviews.

Events are written in the caller's session, so an event commits or rolls back
together with the change it describes.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from formgen.models.database_models import AuditEvent

logger = logging.getLogger(__name__)

# Event types
FIELDS_UPDATED = "template.fields_updated"
VERSION_ROLLED_BACK = "template.version_rolled_back"
OVERRIDE_CREATED = "override.created"
OVERRIDE_APPROVED = "override.approved"
OVERRIDE_REJECTED = "override.rejected"


def field_diff(
    old_fields: Sequence[Dict[str, Any]], new_fields: Sequence[Dict[str, Any]]
) -> Dict[str, List[str]]:
    """Field keys added, removed and changed between two field lists."""
    old = {f.get("name"): f for f in old_fields or []}
    new = {f.get("name"): f for f in new_fields or []}
    return {
        "added": [key for key in new if key not in old],
        "removed": [key for key in old if key not in new],
        "changed": [key for key in new if key in old and new[key] != old[key]],
    }


class AuditLog:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record(
        self,
        event_type: str,
        resource_type: str,
        resource_id: str,
        actor_id: str,
        diff: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            diff=diff,
            reason=reason,
            details=details,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(event)
        await self.db.flush()
        logger.info("Audit %s on %s %s by %s", event_type, resource_type, resource_id, actor_id)
        return event

    async def list_events(
        self,
        resource_type: str,
        resource_id: str,
        event_type: Optional[str] = None,
    ) -> List[AuditEvent]:
        """Events for one resource, oldest first."""
        query = (
            select(AuditEvent)
            .where(AuditEvent.resource_type == resource_type, AuditEvent.resource_id == resource_id)
            .order_by(AuditEvent.created_at, AuditEvent.id)
        )
        if event_type is not None:
            query = query.where(AuditEvent.event_type == event_type)
        result = await self.db.execute(query)
        return list(result.scalars().all())
