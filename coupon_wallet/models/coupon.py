from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text, func

from coupon_wallet.core.database import Base
from coupon_wallet.models._types import JsonDocument, new_id


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), nullable=False, index=True)
    store_id = Column(String(36), nullable=True, index=True)
    code = Column(String(64), nullable=False, unique=True)
    name = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    discount_type = Column(String(20), nullable=False, default="percentage")
    discount_value = Column(Numeric(12, 2), nullable=False)
    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)
    max_redemptions = Column(Integer, nullable=True)
    redeemed_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JsonDocument, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"

    id = Column(String(36), primary_key=True, default=new_id)
    coupon_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    wallet_id = Column(String(36), nullable=True, index=True)
    qr_token_id = Column(String(36), nullable=True, unique=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False)
    meta = Column("metadata", JsonDocument, nullable=False, default=dict)
