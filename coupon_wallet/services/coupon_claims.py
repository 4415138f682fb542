from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from coupon_wallet.core.errors import ConflictError, CouponNotFoundError, NotFoundError, StorageError, storage_guard
from coupon_wallet.core.timeutils import as_utc, utcnow
from coupon_wallet.models.coupon import Coupon
from coupon_wallet.models.store import Store
from coupon_wallet.models.wallet import Wallet
from coupon_wallet.services.documents import CouponState
from coupon_wallet.services.qr_tokens import invalidate_live_tokens
from coupon_wallet.services.stores import require_store_feature
from coupon_wallet.services.wallets import ExpectedWallet, WalletEvent, fetch_wallet, set_coupon_state, transition

logger = logging.getLogger(__name__)
CLAIM_PREFIX = "[CLAIM]"
CLAIM_FEATURE = "coupon.claim"


@dataclass(frozen=True)
class ClaimResult:
    coupon: Coupon
    wallet: Wallet
    store: Store


def get_coupon(db: Session, coupon_id: str) -> Coupon:
    with storage_guard(db, "coupons.fetch", coupon_id=coupon_id):
        coupon = db.query(Coupon).filter(Coupon.id == coupon_id).populate_existing().first()
    if coupon is None:
        raise CouponNotFoundError(coupon_id)
    return coupon


def assert_coupon_claimable(coupon: Coupon, now: datetime) -> None:
    """Activation, validity window and quota, in that order."""
    if not coupon.is_active:
        raise ConflictError("Coupon is not active", code="coupon_inactive")
    start_at = as_utc(coupon.start_at)
    if start_at is not None and start_at > now:
        raise ConflictError("Coupon is not yet available", code="coupon_not_started")
    end_at = as_utc(coupon.end_at)
    if end_at is not None and end_at < now:
        raise ConflictError("Coupon has expired", code="coupon_expired")
    if coupon.max_redemptions is not None and coupon.redeemed_count >= coupon.max_redemptions:
        raise ConflictError("Coupon redemption limit reached", code="coupon_exhausted")


def get_owned_wallet(db: Session, wallet_id: str, user_id: str) -> Wallet:
    wallet = fetch_wallet(db, wallet_id)
    if wallet is None:
        raise NotFoundError(f"Wallet {wallet_id} not found")
    if wallet.user_id != user_id:
        raise ConflictError("Wallet does not belong to user", code="wallet_owner_mismatch")
    return wallet


def claim_coupon(
    db: Session,
    coupon_id: str,
    user_id: str,
    wallet_id: str,
    now: Optional[datetime] = None,
) -> ClaimResult:
    now = as_utc(now) or utcnow()

    coupon = get_coupon(db, coupon_id)
    assert_coupon_claimable(coupon, now)
    store = require_store_feature(db, coupon, CLAIM_FEATURE, now=now)
    wallet = get_owned_wallet(db, wallet_id, user_id)
    expected = ExpectedWallet.of(wallet)

    try:
        invalidate_live_tokens(db, wallet.id, now)
    except StorageError:
        logger.warning("%s failed to invalidate live tokens wallet_id=%s", CLAIM_PREFIX, wallet.id)

    state = CouponState.claimed(coupon_id=coupon.id, coupon_code=coupon.code, at=now)
    updated = transition(
        db,
        wallet.id,
        expected=expected,
        next_status="claimed",
        event=WalletEvent(
            type="coupon.claimed",
            message=f"Coupon {coupon.code} claimed",
            at=now,
            details={"couponId": coupon.id, "userId": user_id, "storeId": store.id},
        ),
        mutate_metadata=set_coupon_state(state),
        context={"couponId": coupon.id, "storeId": store.id, "actorId": user_id},
        source="api.coupons.claim",
    )
    return ClaimResult(coupon=coupon, wallet=updated, store=store)
