from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func

from coupon_wallet.core.database import Base
from coupon_wallet.models._types import JsonDocument, new_id


class Store(Base):
    __tablename__ = "stores"

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    # Mirror of store_subscriptions.status, kept in sync on every billing write
    subscription_status = Column(String(20), nullable=False, default="inactive")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(64), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    billing_interval = Column(String(10), nullable=False, default="month")
    interval_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class StoreBillingProfile(Base):
    __tablename__ = "store_billing_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), nullable=False, index=True)
    provider = Column(String(30), nullable=False, default="toss")
    billing_key = Column(String(200), nullable=False, unique=True)
    customer_key = Column(String(200), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class StoreSubscription(Base):
    __tablename__ = "store_subscriptions"
    __table_args__ = (UniqueConstraint("store_id", name="uq_store_subscriptions_store_id"),)

    id = Column(String(36), primary_key=True, default=new_id)
    store_id = Column(String(36), nullable=False)
    plan_id = Column(String(36), nullable=True)
    billing_profile_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default="inactive")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    grace_until = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column("metadata", JsonDocument, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
