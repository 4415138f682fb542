from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from coupon_wallet.core.errors import (
    ConflictError,
    NotFoundError,
    StorageError,
    TokenExpiredError,
    ValidationError,
    storage_guard,
)
from coupon_wallet.core.timeutils import as_utc, utcnow
from coupon_wallet.models.coupon import Coupon, CouponRedemption
from coupon_wallet.models.qr_token import QrToken
from coupon_wallet.models.wallet import Wallet
from coupon_wallet.services.coupon_claims import assert_coupon_claimable, get_coupon, get_owned_wallet
from coupon_wallet.services.qr_tokens import consume_token, expire_token, find_wallet_token, issue_token
from coupon_wallet.services.stores import require_store_feature
from coupon_wallet.services.wallets import (
    ExpectedWallet,
    WalletEvent,
    coupon_state_of,
    get_wallet,
    set_coupon_state,
    transition,
)

logger = logging.getLogger(__name__)
REDEEM_PREFIX = "[REDEEM]"
QR_FEATURE = "wallet.qr"


@dataclass(frozen=True)
class QrIssue:
    token: str
    token_id: str
    expires_at: datetime
    coupon: Coupon
    wallet: Wallet


@dataclass(frozen=True)
class RedemptionResult:
    redemption: CouponRedemption
    coupon: Coupon
    wallet: Wallet


def _discard_token(db: Session, token_id: str, now: datetime) -> None:
    try:
        expire_token(db, token_id, now)
    except StorageError:
        logger.warning("%s failed to expire orphaned token token_id=%s", REDEEM_PREFIX, token_id)


def issue_wallet_qr(
    db: Session,
    wallet_id: str,
    user_id: str,
    coupon_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> QrIssue:
    now = as_utc(now) or utcnow()
    wallet = get_owned_wallet(db, wallet_id, user_id)
    expected = ExpectedWallet.of(wallet)
    state = coupon_state_of(wallet)

    target_coupon_id = coupon_id or state.coupon_id
    if not target_coupon_id:
        raise ValidationError("Coupon id is required to generate a QR token")
    if state.coupon_id and target_coupon_id != state.coupon_id:
        raise ConflictError("Coupon is not the one claimed in this wallet", code="coupon_mismatch")
    if wallet.status not in ("claimed", "qr_issued"):
        raise ConflictError(f"Wallet in status {wallet.status} cannot issue a QR token", code="invalid_transition")

    coupon = get_coupon(db, target_coupon_id)
    assert_coupon_claimable(coupon, now)
    store = require_store_feature(db, coupon, QR_FEATURE, now=now)

    issued = issue_token(db, wallet, coupon, now)
    expires_at = as_utc(issued.record.expires_at)
    if state.coupon_id is None:
        state = state.claimed(coupon_id=coupon.id, coupon_code=coupon.code, at=now)
    next_state = state.with_token(token_id=issued.record.id, expires_at=expires_at, at=now)

    try:
        updated = transition(
            db,
            wallet.id,
            expected=expected,
            next_status="qr_issued",
            event=WalletEvent(
                type="coupon.qr_issued",
                message=f"QR token issued for coupon {coupon.code}",
                at=now,
                details={"couponId": coupon.id, "qrTokenId": issued.record.id, "expiresAt": expires_at},
            ),
            mutate_metadata=set_coupon_state(next_state),
            context={"couponId": coupon.id, "storeId": store.id, "actorId": user_id},
            source="api.wallet.qr",
        )
    except ConflictError:
        # the wallet never points at this token, so it must not stay live
        _discard_token(db, issued.record.id, now)
        raise
    return QrIssue(
        token=issued.token,
        token_id=issued.record.id,
        expires_at=expires_at,
        coupon=coupon,
        wallet=updated,
    )


def _expire_wallet_token(db: Session, wallet: Wallet, token_record: QrToken, now: datetime) -> None:
    state = coupon_state_of(wallet)
    if wallet.status != "qr_issued" or state.qr_token_id != token_record.id:
        return
    try:
        transition(
            db,
            wallet.id,
            expected=ExpectedWallet.of(wallet),
            next_status="claimed",
            event=WalletEvent(
                type="coupon.qr_expired",
                message="QR token expired before redemption",
                at=now,
                details={"qrTokenId": token_record.id, "expiresAt": as_utc(token_record.expires_at)},
            ),
            mutate_metadata=set_coupon_state(state.without_token(at=now)),
            context={"couponId": token_record.coupon_id},
            source="api.wallet.redeem",
        )
    except ConflictError:
        logger.info("%s wallet moved before expiry could be recorded wallet_id=%s", REDEEM_PREFIX, wallet.id)


def _reserve_quota(db: Session, coupon: Coupon) -> bool:
    with storage_guard(db, "coupons.reserve", coupon_id=coupon.id):
        count = (
            db.query(Coupon)
            .filter(
                Coupon.id == coupon.id,
                or_(Coupon.max_redemptions.is_(None), Coupon.redeemed_count < Coupon.max_redemptions),
            )
            .update({Coupon.redeemed_count: Coupon.redeemed_count + 1}, synchronize_session=False)
        )
        db.commit()
    return count == 1


def _release_quota(db: Session, coupon: Coupon) -> None:
    with storage_guard(db, "coupons.release", coupon_id=coupon.id):
        db.query(Coupon).filter(Coupon.id == coupon.id, Coupon.redeemed_count > 0).update(
            {Coupon.redeemed_count: Coupon.redeemed_count - 1}, synchronize_session=False
        )
        db.commit()


def _revert_redemption(db: Session, coupon: Coupon, redemption: CouponRedemption) -> None:
    """Undo the quota and ledger writes of a redemption whose wallet move failed.

    The token stays consumed.
    """
    redemption_id = redemption.id
    with storage_guard(db, "coupon_redemptions.revert", coupon_id=coupon.id, redemption_id=redemption_id):
        db.expunge(redemption)
        db.query(CouponRedemption).filter(CouponRedemption.id == redemption_id).delete(synchronize_session=False)
        db.commit()
    _release_quota(db, coupon)
    logger.warning("%s reverted redemption_id=%s coupon_id=%s", REDEEM_PREFIX, redemption_id, coupon.id)


def redeem_wallet_token(
    db: Session,
    wallet_id: str,
    token: str,
    now: Optional[datetime] = None,
) -> RedemptionResult:
    if not isinstance(token, str) or not token.strip():
        raise ValidationError("token is required")
    now = as_utc(now) or utcnow()

    wallet = get_wallet(db, wallet_id)
    expected = ExpectedWallet.of(wallet)
    token_record = find_wallet_token(db, wallet.id, token.strip())
    if token_record is None:
        raise NotFoundError("QR token not found")
    if token_record.user_id != wallet.user_id:
        raise ConflictError("QR token owner mismatch", code="token_owner_mismatch")
    if token_record.redeemed_at is not None:
        raise ConflictError("QR token already redeemed", code="token_redeemed")
    if as_utc(token_record.expires_at) <= now:
        _expire_wallet_token(db, wallet, token_record, now)
        raise TokenExpiredError("QR token has expired")
    if not token_record.coupon_id:
        raise ConflictError("QR token is not bound to a coupon", code="token_unbound")

    state = coupon_state_of(wallet)
    if wallet.status != "qr_issued" or state.qr_token_id != token_record.id:
        raise ConflictError("QR token is not the wallet's current token", code="token_superseded")

    coupon = get_coupon(db, token_record.coupon_id)
    if not coupon.is_active:
        raise ConflictError("Coupon is no longer active", code="coupon_inactive")
    end_at = as_utc(coupon.end_at)
    if end_at is not None and end_at < now:
        raise ConflictError("Coupon has expired", code="coupon_expired")

    if not _reserve_quota(db, coupon):
        raise ConflictError("Coupon redemption limit reached", code="coupon_exhausted")
    if not consume_token(db, token_record, now):
        _release_quota(db, coupon)
        raise ConflictError("QR token redemption conflict", code="token_redeemed")

    redemption = CouponRedemption(
        coupon_id=coupon.id,
        user_id=token_record.user_id,
        wallet_id=wallet.id,
        qr_token_id=token_record.id,
        redeemed_at=now,
        meta={"source": "wallet.redeem"},
    )
    try:
        with storage_guard(db, "coupon_redemptions.insert", coupon_id=coupon.id, token_id=token_record.id):
            db.add(redemption)
            db.commit()
            db.refresh(redemption)
    except (ConflictError, StorageError):
        _release_quota(db, coupon)
        raise

    try:
        updated = transition(
            db,
            wallet.id,
            expected=expected,
            next_status="redeemed",
            event=WalletEvent(
                type="coupon.redeemed",
                message=f"Coupon {coupon.code} redeemed",
                at=now,
                details={"couponId": coupon.id, "qrTokenId": token_record.id, "redemptionId": redemption.id},
            ),
            mutate_metadata=set_coupon_state(state.redeemed(at=now)),
            context={"couponId": coupon.id, "storeId": coupon.store_id},
            source="api.wallet.redeem",
        )
    except ConflictError:
        _revert_redemption(db, coupon, redemption)
        raise
    logger.info("%s coupon_id=%s wallet_id=%s redemption_id=%s", REDEEM_PREFIX, coupon.id, wallet.id, redemption.id)
    return RedemptionResult(redemption=redemption, coupon=get_coupon(db, coupon.id), wallet=updated)
