import os
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coupon_wallet.core.database import Base, get_db
from coupon_wallet.core.errors import register_error_handlers
from coupon_wallet.middleware.observability import ObservabilityMiddleware
from coupon_wallet.models.coupon import Coupon
from coupon_wallet.models.store import Store, StoreBillingProfile, StoreSubscription, SubscriptionPlan
from coupon_wallet.models.wallet import Wallet
from coupon_wallet.routers.admin_events import router as admin_events_router
from coupon_wallet.routers.approvals import router as approvals_router
from coupon_wallet.routers.billing import router as billing_router
from coupon_wallet.routers.coupons import router as coupons_router
from coupon_wallet.routers.scan import router as scan_router
from coupon_wallet.routers.wallet import router as wallet_router
from tests.fixtures_data import CUSTOMER_ID, MERCHANT_ID, STORE


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def client(db_session):
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)
    app.include_router(coupons_router)
    app.include_router(approvals_router)
    app.include_router(wallet_router)
    app.include_router(scan_router)
    app.include_router(billing_router)
    app.include_router(admin_events_router)
    app.dependency_overrides[get_db] = lambda: db_session
    return TestClient(app)


def _add(db, instance):
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


@pytest.fixture
def seed(db_session):
    def store(status="active", grace_until=None, with_subscription=True, **overrides):
        values = dict(STORE, subscription_status=status)
        values.update(overrides)
        created = _add(db_session, Store(**values))
        if with_subscription:
            _add(
                db_session,
                StoreSubscription(store_id=created.id, status=status, grace_until=grace_until, meta={}),
            )
        return created

    def coupon(**overrides):
        values = {
            "merchant_id": MERCHANT_ID,
            "store_id": STORE["id"],
            "code": "SPRING10",
            "discount_type": "percentage",
            "discount_value": Decimal("10"),
            "is_active": True,
            "redeemed_count": 0,
            "max_redemptions": None,
            "meta": {},
            "version": 0,
        }
        values.update(overrides)
        return _add(db_session, Coupon(**values))

    def wallet(user_id=CUSTOMER_ID, status="available", meta=None, **overrides):
        return _add(db_session, Wallet(user_id=user_id, status=status, meta=meta or {}, version=0, **overrides))

    def plan(interval="month", count=1, code="basic"):
        return _add(
            db_session,
            SubscriptionPlan(code=code, name=code.title(), billing_interval=interval, interval_count=count),
        )

    def billing_profile(store_id=STORE["id"], billing_key="bk_live_123", customer_key="cust_123", created_at=None):
        values = {"store_id": store_id, "billing_key": billing_key, "customer_key": customer_key, "status": "active"}
        if isinstance(created_at, datetime):
            values["created_at"] = created_at
        return _add(db_session, StoreBillingProfile(**values))

    return SimpleNamespace(store=store, coupon=coupon, wallet=wallet, plan=plan, billing_profile=billing_profile)
