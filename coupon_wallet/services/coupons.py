from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from coupon_wallet.core.errors import ConflictError, ValidationError, storage_guard
from coupon_wallet.core.timeutils import as_utc, isoformat, utcnow
from coupon_wallet.models.coupon import Coupon
from coupon_wallet.models.store import Store
from coupon_wallet.services.audit_trail import record_event_safely
from coupon_wallet.services.coupon_approvals import resolve_coupon_approval
from coupon_wallet.services.coupon_claims import assert_coupon_claimable
from coupon_wallet.services.documents import CouponApproval
from coupon_wallet.services.stores import is_feature_allowed, load_entitlement

logger = logging.getLogger(__name__)
COUPON_PREFIX = "[COUPON]"
DISCOUNT_TYPES = ("percentage", "fixed")


def create_coupon(
    db: Session,
    *,
    merchant_id: str,
    code: str,
    discount_type: str,
    discount_value: Decimal,
    store_id: Optional[str] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    max_redemptions: Optional[int] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Coupon:
    """Create a coupon awaiting sales review; it stays inactive until approved."""
    normalized_code = (code or "").strip().upper()
    if not normalized_code:
        raise ValidationError("code is required")
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError(f"discount_type must be one of {', '.join(DISCOUNT_TYPES)}")
    if discount_value is None or Decimal(discount_value) <= 0:
        raise ValidationError("discount_value must be positive")
    if discount_type == "percentage" and Decimal(discount_value) > 100:
        raise ValidationError("percentage discounts cannot exceed 100")
    if max_redemptions is not None and max_redemptions < 1:
        raise ValidationError("max_redemptions must be at least 1")
    start_at = as_utc(start_at)
    end_at = as_utc(end_at)
    if start_at and end_at and end_at < start_at:
        raise ValidationError("end_at must not precede start_at")

    meta = dict(metadata or {})
    meta["salesApproval"] = CouponApproval().to_dict()

    coupon = Coupon(
        merchant_id=merchant_id,
        store_id=store_id,
        code=normalized_code,
        name=name,
        description=description,
        discount_type=discount_type,
        discount_value=Decimal(discount_value),
        start_at=start_at,
        end_at=end_at,
        max_redemptions=max_redemptions,
        redeemed_count=0,
        is_active=False,
        meta=meta,
        version=0,
    )
    try:
        with storage_guard(db, "coupons.insert", code=normalized_code):
            db.add(coupon)
            db.commit()
            db.refresh(coupon)
    except ConflictError as exc:
        raise ConflictError(f"Coupon code {normalized_code} already exists", code=exc.code) from exc

    logger.info("%s created coupon_id=%s code=%s", COUPON_PREFIX, coupon.id, coupon.code)
    record_event_safely(
        db,
        type="coupon.created",
        message=f"Coupon {coupon.code} created",
        context={"couponId": coupon.id, "storeId": store_id, "merchantId": merchant_id},
        details={"discountType": discount_type, "discountValue": coupon.discount_value},
        source="api.coupons",
    )
    return coupon


def list_claimable_coupons(db: Session, now: Optional[datetime] = None) -> list[Coupon]:
    """Coupons a customer can claim right now, from stores that may offer them."""
    now = as_utc(now) or utcnow()
    with storage_guard(db, "coupons.list_claimable"):
        coupons = db.query(Coupon).filter(Coupon.is_active.is_(True)).order_by(Coupon.created_at.desc()).all()
        stores = db.query(Store).all()
    stores_by_id = {store.id: store for store in stores}
    stores_by_owner = {store.owner_id: store for store in stores}

    claimable = []
    for coupon in coupons:
        try:
            assert_coupon_claimable(coupon, now)
        except ConflictError:
            continue
        store = stores_by_id.get(coupon.store_id) if coupon.store_id else None
        store = store or stores_by_owner.get(coupon.merchant_id)
        if store is None:
            continue
        entitlement = load_entitlement(db, store)
        if is_feature_allowed(entitlement.status, entitlement.grace_until, now):
            claimable.append(coupon)
    return claimable


def coupon_to_dict(coupon: Coupon, approval: Optional[CouponApproval] = None) -> dict[str, Any]:
    approval = approval or resolve_coupon_approval(coupon)
    return {
        "id": coupon.id,
        "code": coupon.code,
        "name": coupon.name,
        "description": coupon.description,
        "discount_type": coupon.discount_type,
        "discount_value": float(coupon.discount_value) if coupon.discount_value is not None else None,
        "start_at": isoformat(coupon.start_at),
        "end_at": isoformat(coupon.end_at),
        "max_redemptions": coupon.max_redemptions,
        "redeemed_count": coupon.redeemed_count,
        "is_active": bool(coupon.is_active),
        "store_id": coupon.store_id,
        "merchant_id": coupon.merchant_id,
        "approval": approval.to_dict(),
    }
