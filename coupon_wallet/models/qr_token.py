from sqlalchemy import Column, DateTime, String, func

from coupon_wallet.core.database import Base
from coupon_wallet.models._types import JsonDocument, new_id


class QrToken(Base):
    __tablename__ = "qr_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    wallet_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    coupon_id = Column(String(36), nullable=True, index=True)
    # SHA-256 hex digest; the raw token is never stored
    token_hash = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column("metadata", JsonDocument, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
