from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from coupon_wallet.core.errors import AccessDeniedError, NotFoundError, storage_guard
from coupon_wallet.core.timeutils import as_utc, utcnow
from coupon_wallet.models.coupon import Coupon
from coupon_wallet.models.store import Store, StoreSubscription

logger = logging.getLogger(__name__)
STORE_PREFIX = "[STORE]"

SUBSCRIPTION_STATUSES = ("active", "grace", "canceled", "inactive")
DEFAULT_SUBSCRIPTION_STATUS = "inactive"


@dataclass(frozen=True)
class StoreEntitlement:
    store: Store
    status: str
    grace_until: Optional[datetime]


def fetch_store_for_coupon(db: Session, coupon: Coupon) -> Optional[Store]:
    """Resolve by the coupon's store first, then by the merchant who owns one."""
    with storage_guard(db, "stores.resolve", coupon_id=coupon.id):
        if coupon.store_id:
            store = db.query(Store).filter(Store.id == coupon.store_id).first()
            if store is not None:
                return store
        if coupon.merchant_id:
            return db.query(Store).filter(Store.owner_id == coupon.merchant_id).first()
    return None


def fetch_store_by_owner(db: Session, owner_id: str) -> Optional[Store]:
    with storage_guard(db, "stores.by_owner", owner_id=owner_id):
        return db.query(Store).filter(Store.owner_id == owner_id).first()


def fetch_subscription(db: Session, store_id: str) -> Optional[StoreSubscription]:
    with storage_guard(db, "store_subscriptions.fetch", store_id=store_id):
        return (
            db.query(StoreSubscription)
            .filter(StoreSubscription.store_id == store_id)
            .populate_existing()
            .first()
        )


def load_entitlement(db: Session, store: Store) -> StoreEntitlement:
    subscription = fetch_subscription(db, store.id)
    if subscription is not None:
        status = subscription.status
        grace_until = as_utc(subscription.grace_until)
    else:
        status = store.subscription_status
        grace_until = None
    if status not in SUBSCRIPTION_STATUSES:
        status = DEFAULT_SUBSCRIPTION_STATUS
    return StoreEntitlement(store=store, status=status, grace_until=grace_until)


def is_feature_allowed(status: str, grace_until: Optional[datetime] = None, now: Optional[datetime] = None) -> bool:
    if status == "active":
        return True
    if status == "grace":
        if grace_until is None:
            return True
        return (now or utcnow()) <= as_utc(grace_until)
    return False


def assert_store_feature_access(
    status: str,
    feature: str,
    store_name: Optional[str] = None,
    *,
    grace_until: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> None:
    if is_feature_allowed(status, grace_until, now):
        return
    label = store_name or "store"
    logger.info("%s feature denied feature=%s status=%s", STORE_PREFIX, feature, status)
    raise AccessDeniedError(
        f"{label} subscription is {status}. "
        f"Access to {feature} is restricted until the subscription is reactivated.",
        subscription_status=status,
        feature=feature,
    )


def require_store_feature(db: Session, coupon: Coupon, feature: str, now: Optional[datetime] = None) -> Store:
    store = fetch_store_for_coupon(db, coupon)
    if store is None:
        raise NotFoundError("Store not found for coupon")
    entitlement = load_entitlement(db, store)
    assert_store_feature_access(
        entitlement.status,
        feature,
        store.name,
        grace_until=entitlement.grace_until,
        now=now,
    )
    return store
