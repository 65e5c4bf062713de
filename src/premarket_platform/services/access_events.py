"""Audit trail helper for access record transitions."""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.domain.enums import AccessActor, AccessEventType
from premarket_platform.domain.models import AccessEvent, GrantAccessRequest


def _value(v):
    return v.value if hasattr(v, "value") else v


def record_access_event(
    db: AsyncSession,
    record: GrantAccessRequest,
    event_type: AccessEventType,
    actor: AccessActor,
    actor_id: str | None = None,
    from_status=None,
    to_status=None,
    data: dict | None = None,
) -> AccessEvent:
    """Add an AccessEvent row to the session. The caller commits."""
    event = AccessEvent(
        id=str(uuid.uuid4()),
        access_record_id=record.id,
        event_type=_value(event_type),
        actor=_value(actor),
        actor_id=actor_id,
        from_status=_value(from_status),
        to_status=_value(to_status),
        data=data or {},
    )
    db.add(event)
    return event
