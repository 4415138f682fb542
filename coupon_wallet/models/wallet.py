from sqlalchemy import Column, DateTime, Integer, String, func

from coupon_wallet.core.database import Base
from coupon_wallet.models._types import JsonDocument, new_id


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="available")
    meta = Column("metadata", JsonDocument, nullable=False, default=dict)
    # Bumped by every transition; the optimistic guard for metadata-only changes
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
