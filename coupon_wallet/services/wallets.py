from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from coupon_wallet.core.config import WALLET_EVENT_LIMIT
from coupon_wallet.core.errors import ConflictError, NotFoundError, storage_guard
from coupon_wallet.core.timeutils import isoformat
from coupon_wallet.models.wallet import Wallet
from coupon_wallet.services.audit_trail import record_event_safely, sanitize_record
from coupon_wallet.services.documents import CouponState

logger = logging.getLogger(__name__)
WALLET_PREFIX = "[WALLET]"

WALLET_STATUSES = ("available", "claimed", "qr_issued", "redeemed")

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "available": frozenset({"claimed"}),
    "claimed": frozenset({"claimed", "qr_issued"}),
    "qr_issued": frozenset({"qr_issued", "claimed", "redeemed"}),
    # a redeemed wallet starts its next coupon cycle by claiming again
    "redeemed": frozenset({"claimed"}),
}

MetadataMutator = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class WalletEvent:
    type: str
    message: str
    at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "message": self.message, "at": isoformat(self.at)}
        details = sanitize_record(self.details)
        if details:
            payload["details"] = details
        return payload


@dataclass(frozen=True)
class ExpectedWallet:
    """Status and version a caller observed; transitions are guarded by both."""

    status: str
    version: int

    @classmethod
    def of(cls, wallet: Wallet) -> "ExpectedWallet":
        return cls(status=wallet.status, version=wallet.version)


def is_transition_allowed(current: str, next_status: str) -> bool:
    return next_status in ALLOWED_TRANSITIONS.get(current, frozenset())


def fetch_wallet(db: Session, wallet_id: str) -> Optional[Wallet]:
    with storage_guard(db, "wallets.fetch", wallet_id=wallet_id):
        return db.query(Wallet).filter(Wallet.id == wallet_id).populate_existing().first()


def get_wallet(db: Session, wallet_id: str) -> Wallet:
    wallet = fetch_wallet(db, wallet_id)
    if wallet is None:
        raise NotFoundError(f"Wallet {wallet_id} not found")
    return wallet


def coupon_state_of(wallet: Wallet) -> CouponState:
    return CouponState.from_metadata(wallet.meta)


def set_coupon_state(state: CouponState) -> MetadataMutator:
    def mutate(metadata: dict[str, Any]) -> dict[str, Any]:
        metadata["couponState"] = state.to_dict()
        return metadata

    return mutate


def _append_event(metadata: dict[str, Any], fallback: Mapping[str, Any], event: WalletEvent) -> None:
    existing = metadata.get("events")
    if not isinstance(existing, list):
        existing = fallback.get("events") if isinstance(fallback.get("events"), list) else []
    limit = max(1, WALLET_EVENT_LIMIT)
    kept = list(existing)[-(limit - 1):] if limit > 1 else []
    metadata["events"] = kept + [event.to_dict()]


def transition(
    db: Session,
    wallet_id: str,
    *,
    expected: ExpectedWallet,
    next_status: str,
    event: WalletEvent,
    mutate_metadata: Optional[MetadataMutator] = None,
    context: Optional[Mapping[str, Any]] = None,
    source: Optional[str] = None,
) -> Wallet:
    if next_status not in WALLET_STATUSES:
        raise ConflictError(f"Unknown wallet status {next_status}")

    current = get_wallet(db, wallet_id)
    if current.status != expected.status or current.version != expected.version:
        raise ConflictError(
            f"Wallet {wallet_id} changed concurrently "
            f"(expected {expected.status}@{expected.version}, found {current.status}@{current.version})",
            code="wallet_conflict",
        )
    if not is_transition_allowed(current.status, next_status):
        raise ConflictError(
            f"Wallet {wallet_id} cannot move from {current.status} to {next_status}",
            code="invalid_transition",
        )

    base_metadata = copy.deepcopy(current.meta) if isinstance(current.meta, dict) else {}
    working = copy.deepcopy(base_metadata)
    next_metadata = mutate_metadata(working) if mutate_metadata else working
    _append_event(next_metadata, base_metadata, event)

    with storage_guard(db, "wallets.transition", wallet_id=wallet_id, next_status=next_status):
        updated = (
            db.query(Wallet)
            .filter(
                Wallet.id == wallet_id,
                Wallet.status == expected.status,
                Wallet.version == expected.version,
            )
            .update(
                {
                    Wallet.status: next_status,
                    Wallet.meta: next_metadata,
                    Wallet.version: Wallet.version + 1,
                },
                synchronize_session=False,
            )
        )
        db.commit()
    if updated != 1:
        raise ConflictError(f"Wallet {wallet_id} changed concurrently", code="wallet_conflict")

    logger.info(
        "%s %s wallet_id=%s %s->%s",
        WALLET_PREFIX,
        event.message,
        wallet_id,
        expected.status,
        next_status,
    )

    audit_context = {
        "walletId": wallet_id,
        "userId": current.user_id,
        "previousStatus": expected.status,
        "nextStatus": next_status,
    }
    audit_context.update(context or {})
    record_event_safely(
        db,
        type=event.type,
        occurred_at=event.at,
        message=event.message,
        details=event.details,
        context=audit_context,
        source=source,
    )
    return get_wallet(db, wallet_id)


def wallet_to_dict(wallet: Wallet) -> dict[str, Any]:
    metadata = wallet.meta if isinstance(wallet.meta, dict) else {}
    return {
        "id": wallet.id,
        "user_id": wallet.user_id,
        "status": wallet.status,
        "version": wallet.version,
        "coupon_state": coupon_state_of(wallet).to_dict(),
        "events": list(metadata.get("events") or []),
    }
