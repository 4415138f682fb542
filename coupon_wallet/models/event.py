from sqlalchemy import Column, DateTime, String, Text, event, func

from coupon_wallet.core.database import Base
from coupon_wallet.core.timeutils import utcnow
from coupon_wallet.models._types import JsonDocument, new_id


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    type = Column(String(120), nullable=False, index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    message = Column(Text, nullable=True)
    context = Column(JsonDocument, nullable=True)
    details = Column(JsonDocument, nullable=True)
    source = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)


@event.listens_for(Event, "before_update")
def _reject_event_update(_mapper, _connection, target):
    raise ValueError(f"Event {target.id} is append-only")


@event.listens_for(Event, "before_delete")
def _reject_event_delete(_mapper, _connection, target):
    raise ValueError(f"Event {target.id} is append-only")
