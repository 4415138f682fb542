from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from coupon_wallet.core.config import QR_TOKEN_BYTES, QR_TOKEN_TTL_SECONDS
from coupon_wallet.core.errors import storage_guard
from coupon_wallet.models.coupon import Coupon
from coupon_wallet.models.qr_token import QrToken
from coupon_wallet.models.wallet import Wallet

logger = logging.getLogger(__name__)
TOKEN_PREFIX = "[QR_TOKEN]"


@dataclass(frozen=True)
class IssuedToken:
    """The raw token is only ever returned here, once, to the issuing caller."""

    token: str
    record: QrToken


def generate_token(byte_length: int = QR_TOKEN_BYTES) -> str:
    raw = secrets.token_bytes(byte_length)
    return base64.b64encode(raw).decode("ascii").replace("+", "-").replace("/", "_").rstrip("=")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_expiry(now: datetime) -> datetime:
    return now + timedelta(seconds=QR_TOKEN_TTL_SECONDS)


def invalidate_live_tokens(db: Session, wallet_id: str, now: datetime) -> int:
    with storage_guard(db, "qr_tokens.invalidate", wallet_id=wallet_id):
        count = (
            db.query(QrToken)
            .filter(
                QrToken.wallet_id == wallet_id,
                QrToken.redeemed_at.is_(None),
                QrToken.expires_at > now,
            )
            .update({QrToken.expires_at: now}, synchronize_session=False)
        )
        db.commit()
    if count:
        logger.info("%s invalidated wallet_id=%s count=%s", TOKEN_PREFIX, wallet_id, count)
    return count


def issue_token(db: Session, wallet: Wallet, coupon: Coupon, now: datetime) -> IssuedToken:
    # A failed invalidation propagates: two live tokens per wallet are never allowed
    invalidate_live_tokens(db, wallet.id, now)

    token = generate_token()
    record = QrToken(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        coupon_id=coupon.id,
        token_hash=hash_token(token),
        expires_at=token_expiry(now),
        meta={"couponCode": coupon.code},
    )
    with storage_guard(db, "qr_tokens.insert", wallet_id=wallet.id, coupon_id=coupon.id):
        db.add(record)
        db.commit()
        db.refresh(record)
    logger.info("%s issued wallet_id=%s token_id=%s", TOKEN_PREFIX, wallet.id, record.id)
    return IssuedToken(token=token, record=record)


def find_wallet_token(db: Session, wallet_id: str, token: str) -> QrToken | None:
    with storage_guard(db, "qr_tokens.lookup", wallet_id=wallet_id):
        return (
            db.query(QrToken)
            .filter(QrToken.wallet_id == wallet_id, QrToken.token_hash == hash_token(token))
            .populate_existing()
            .first()
        )


def consume_token(db: Session, token_record: QrToken, now: datetime) -> bool:
    """Mark the token redeemed if it is still live. Exactly one caller wins."""
    with storage_guard(db, "qr_tokens.consume", token_id=token_record.id):
        count = (
            db.query(QrToken)
            .filter(
                QrToken.id == token_record.id,
                QrToken.redeemed_at.is_(None),
                QrToken.expires_at > now,
            )
            .update({QrToken.redeemed_at: now}, synchronize_session=False)
        )
        db.commit()
    return count == 1


def find_token(db: Session, token: str) -> QrToken | None:
    with storage_guard(db, "qr_tokens.lookup"):
        return db.query(QrToken).filter(QrToken.token_hash == hash_token(token)).populate_existing().first()


def expire_token(db: Session, token_id: str, now: datetime) -> bool:
    """Cut a single unredeemed token's lifetime short."""
    with storage_guard(db, "qr_tokens.expire", token_id=token_id):
        count = (
            db.query(QrToken)
            .filter(QrToken.id == token_id, QrToken.redeemed_at.is_(None), QrToken.expires_at > now)
            .update({QrToken.expires_at: now}, synchronize_session=False)
        )
        db.commit()
    if count:
        logger.info("%s expired token_id=%s", TOKEN_PREFIX, token_id)
    return count == 1
