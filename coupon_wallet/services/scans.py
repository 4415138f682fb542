"""Merchant-side redemption: a store scans the QR code a customer presents.

Every scan that reaches token lookup leaves a ``wallet.scan.success`` or
``wallet.scan.failed`` event whose context carries the result code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from coupon_wallet.core.errors import (
    ConflictError,
    CouponNotFoundError,
    NotFoundError,
    ScanRejectedError,
    TokenExpiredError,
    ValidationError,
)
from coupon_wallet.core.timeutils import as_utc, isoformat, utcnow
from coupon_wallet.models.coupon import Coupon, CouponRedemption
from coupon_wallet.models.qr_token import QrToken
from coupon_wallet.models.store import Store
from coupon_wallet.models.wallet import Wallet
from coupon_wallet.services.audit_trail import ABSENT, record_event_safely
from coupon_wallet.services.coupon_claims import get_coupon
from coupon_wallet.services.qr_tokens import find_token, hash_token
from coupon_wallet.services.redemptions import redeem_wallet_token
from coupon_wallet.services.stores import (
    assert_store_feature_access,
    fetch_store_by_owner,
    fetch_store_for_coupon,
    load_entitlement,
)

logger = logging.getLogger(__name__)
SCAN_PREFIX = "[SCAN]"
SCAN_SOURCE = "api.scan.verify"
SCAN_FEATURE = "wallet.scan"
SUCCESS_EVENT_TYPE = "wallet.scan.success"
FAILURE_EVENT_TYPE = "wallet.scan.failed"

RESULT_MESSAGES = {
    "redeemed": "QR token redeemed successfully",
    "expired": "QR token has expired",
    "duplicate": "QR token already redeemed",
    "mismatched_store": "QR token belongs to a different store",
    "not_found": "QR token not found",
    "invalid": "QR token is not redeemable",
}


@dataclass(frozen=True)
class ScanResult:
    message: str
    store_id: str
    redemption: CouponRedemption
    coupon: Coupon
    wallet: Wallet
    result: str = "redeemed"


def _coupon_ref(coupon: Optional[Coupon]) -> Optional[dict[str, Any]]:
    if coupon is None:
        return None
    return {"id": coupon.id, "code": coupon.code}


def _record_scan(
    db: Session,
    *,
    type: str,
    message: str,
    merchant_id: str,
    store_id: str,
    result: str,
    at: datetime,
    token_record: Optional[QrToken] = None,
    coupon_id: Optional[str] = None,
    redemption_id: Any = ABSENT,
    details: Optional[dict[str, Any]] = None,
) -> None:
    record_event_safely(
        db,
        type=type,
        occurred_at=at,
        message=message,
        source=SCAN_SOURCE,
        context={
            "actorId": merchant_id,
            "storeId": store_id,
            "walletId": token_record.wallet_id if token_record is not None else None,
            "couponId": coupon_id or (token_record.coupon_id if token_record is not None else None),
            "qrTokenId": token_record.id if token_record is not None else None,
            "redemptionId": redemption_id,
            "userId": token_record.user_id if token_record is not None else ABSENT,
            "result": result,
        },
        details=details,
    )


def _reject(
    db: Session,
    result: str,
    *,
    status_code: int,
    merchant_id: str,
    store: Store,
    at: datetime,
    token_record: Optional[QrToken] = None,
    coupon: Optional[Coupon] = None,
    message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    **extra: Any,
) -> ScanRejectedError:
    """Record the failed scan and build the error the caller raises."""
    _record_scan(
        db,
        type=FAILURE_EVENT_TYPE,
        message=RESULT_MESSAGES[result],
        merchant_id=merchant_id,
        store_id=store.id,
        result=result,
        at=at,
        token_record=token_record,
        coupon_id=coupon.id if coupon is not None else None,
        details=details,
    )
    logger.info("%s rejected result=%s store_id=%s", SCAN_PREFIX, result, store.id)
    return ScanRejectedError(
        result,
        message or RESULT_MESSAGES[result],
        status_code=status_code,
        coupon=_coupon_ref(coupon),
        wallet_id=token_record.wallet_id if token_record is not None else None,
        **extra,
    )


def verify_scan(db: Session, merchant_id: str, token: Optional[str], now: Optional[datetime] = None) -> ScanResult:
    if not isinstance(token, str) or not token.strip():
        raise ScanRejectedError("invalid", "QR token is required", status_code=400)
    if not merchant_id:
        raise ValidationError("merchant_id is required")
    now = as_utc(now) or utcnow()
    token_value = token.strip()

    store = fetch_store_by_owner(db, merchant_id)
    if store is None:
        raise NotFoundError("Store not found for merchant")
    entitlement = load_entitlement(db, store)
    assert_store_feature_access(
        entitlement.status,
        SCAN_FEATURE,
        store.name,
        grace_until=entitlement.grace_until,
        now=now,
    )
    scan = {"merchant_id": merchant_id, "store": store, "at": now}

    token_record = find_token(db, token_value)
    if token_record is None:
        raise _reject(db, "not_found", status_code=404, details={"tokenHash": hash_token(token_value)}, **scan)

    coupon = None
    coupon_store = None
    if token_record.coupon_id:
        try:
            coupon = get_coupon(db, token_record.coupon_id)
        except CouponNotFoundError as exc:
            raise ScanRejectedError("invalid", "Coupon not found", status_code=404) from exc
        coupon_store = fetch_store_for_coupon(db, coupon)
        if coupon_store is None:
            raise _reject(
                db,
                "invalid",
                status_code=404,
                token_record=token_record,
                coupon=coupon,
                message="Store not found for coupon",
                details={"reason": "store_not_found_for_coupon"},
                **scan,
            )
        if coupon_store.id != store.id:
            raise _reject(
                db,
                "mismatched_store",
                status_code=403,
                token_record=token_record,
                coupon=coupon,
                details={"couponStoreId": coupon_store.id},
                store_id=coupon_store.id,
                expected_store_id=store.id,
                **scan,
            )

    store_id = coupon_store.id if coupon_store is not None else store.id
    try:
        redeemed = redeem_wallet_token(db, token_record.wallet_id, token_value, now=now)
    except TokenExpiredError as exc:
        expires_at = isoformat(token_record.expires_at)
        raise _reject(
            db,
            "expired",
            status_code=exc.status_code,
            token_record=token_record,
            coupon=coupon,
            details={"expiresAt": expires_at},
            expires_at=expires_at,
            store_id=store_id,
            **scan,
        ) from exc
    except ConflictError as exc:
        if exc.code == "token_redeemed":
            redeemed_at = isoformat(token_record.redeemed_at)
            raise _reject(
                db,
                "duplicate",
                status_code=exc.status_code,
                token_record=token_record,
                coupon=coupon,
                details={"redeemedAt": redeemed_at},
                redeemed_at=redeemed_at,
                store_id=store_id,
                **scan,
            ) from exc
        raise _reject(
            db,
            "invalid",
            status_code=exc.status_code,
            token_record=token_record,
            coupon=coupon,
            message=exc.message,
            details={"reason": exc.code},
            store_id=store_id,
            **scan,
        ) from exc
    except (ValidationError, NotFoundError) as exc:
        raise _reject(
            db,
            "invalid",
            status_code=exc.status_code,
            token_record=token_record,
            coupon=coupon,
            message=exc.message,
            details={"reason": exc.code},
            store_id=store_id,
            **scan,
        ) from exc

    message = f"Redeemed coupon {redeemed.coupon.code}"
    _record_scan(
        db,
        type=SUCCESS_EVENT_TYPE,
        message=message,
        merchant_id=merchant_id,
        store_id=store_id,
        result="redeemed",
        at=now,
        token_record=token_record,
        coupon_id=redeemed.coupon.id,
        redemption_id=redeemed.redemption.id,
        details={"redemptionId": redeemed.redemption.id},
    )
    logger.info("%s redeemed store_id=%s redemption_id=%s", SCAN_PREFIX, store_id, redeemed.redemption.id)
    return ScanResult(
        message=message,
        store_id=store_id,
        redemption=redeemed.redemption,
        coupon=redeemed.coupon,
        wallet=redeemed.wallet,
    )
