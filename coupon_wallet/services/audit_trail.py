from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from coupon_wallet.core.config import EVENTS_DEFAULT_LIMIT, EVENTS_MAX_LIMIT
from coupon_wallet.core.errors import StorageError, ValidationError, storage_guard
from coupon_wallet.core.timeutils import isoformat, parse_timestamp, utcnow
from coupon_wallet.models.event import Event

logger = logging.getLogger(__name__)
AUDIT_PREFIX = "[AUDIT]"

# Marks a field that was not supplied; None is kept and stored as JSON null
ABSENT: Any = object()
_DROP = object()


def _prune(value: Any) -> Any:
    """Return a JSON-safe copy of ``value`` or ``_DROP`` when nothing remains."""
    if value is ABSENT:
        return _DROP
    if value is None:
        return None
    if isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _DROP
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, Enum):
        return _prune(value.value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        pruned = {}
        for key, inner in value.items():
            cleaned = _prune(inner)
            if cleaned is not _DROP:
                pruned[str(key)] = cleaned
        return pruned if pruned else _DROP
    if isinstance(value, (list, tuple)):
        items = [item for item in (_prune(inner) for inner in value) if item is not _DROP]
        return items if items else _DROP
    return _DROP


def sanitize_record(record: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    if not record:
        return None
    cleaned = _prune(record)
    if cleaned is _DROP or not isinstance(cleaned, dict):
        return None
    return cleaned


def _clean_text(value: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def record_event(
    db: Session,
    *,
    type: str,
    occurred_at: datetime | str | None = None,
    message: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
    details: Optional[Mapping[str, Any]] = None,
    source: Optional[str] = None,
) -> Event:
    event_type = type.strip() if isinstance(type, str) else ""
    if not event_type:
        raise ValidationError("Event type is required")

    entry = Event(
        type=event_type,
        occurred_at=parse_timestamp(occurred_at) or utcnow(),
        message=message if isinstance(message, str) and message.strip() else None,
        context=sanitize_record(context),
        details=sanitize_record(details),
        source=_clean_text(source),
    )
    with storage_guard(db, "events.insert", event_type=event_type):
        db.add(entry)
        db.commit()
    return entry


def record_event_safely(db: Session, **kwargs: Any) -> Optional[Event]:
    """Fire-and-forget variant for business transitions.

    Audit failures never block the transition that triggered them.
    """
    try:
        return record_event(db, **kwargs)
    except (StorageError, ValidationError):
        logger.exception("%s failed to record event type=%s", AUDIT_PREFIX, kwargs.get("type"))
        return None


def list_events(
    db: Session,
    *,
    event_type: Optional[str] = None,
    since: datetime | str | None = None,
    limit: Optional[int] = None,
) -> list[Event]:
    resolved_limit = EVENTS_DEFAULT_LIMIT if limit is None else max(1, min(EVENTS_MAX_LIMIT, int(limit)))
    query = db.query(Event)
    if event_type and event_type.strip():
        query = query.filter(Event.type == event_type.strip())
    since_dt = parse_timestamp(since)
    if since_dt is not None:
        query = query.filter(Event.created_at >= since_dt)
    with storage_guard(db, "events.list", event_type=event_type):
        return query.order_by(Event.created_at.desc(), Event.id.desc()).limit(resolved_limit).all()


def event_to_dict(entry: Event) -> dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "created_at": isoformat(entry.created_at),
        "occurred_at": isoformat(entry.occurred_at),
        "message": entry.message,
        "source": entry.source,
        "context": entry.context or {},
        "details": entry.details or {},
    }
