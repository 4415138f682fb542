from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from coupon_wallet.core.config import EVENTS_DEFAULT_LIMIT, EVENTS_MAX_LIMIT
from coupon_wallet.core.database import get_db
from coupon_wallet.core.errors import ValidationError
from coupon_wallet.core.timeutils import parse_timestamp
from coupon_wallet.services.audit_trail import event_to_dict, list_events

router = APIRouter(prefix="/api/admin/events", tags=["admin-events"])


@router.get("")
def read_events(
    type: Optional[str] = None,
    since: Optional[str] = None,
    limit: int = Query(EVENTS_DEFAULT_LIMIT, ge=1, le=EVENTS_MAX_LIMIT),
    db: Session = Depends(get_db),
):
    if since and parse_timestamp(since) is None:
        raise ValidationError("since must be an ISO-8601 timestamp")
    events = list_events(db, event_type=type, since=since, limit=limit)
    return {"events": [event_to_dict(entry) for entry in events]}
