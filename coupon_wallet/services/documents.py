"""Typed views of the JSON sub-documents embedded in coupon and wallet rows.

Rows keep these as plain JSON; services decode them here on read so the
invariants are checked once, at the storage boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Optional

from coupon_wallet.core.timeutils import isoformat, parse_timestamp

APPROVAL_STATUSES = ("pending", "approved", "rejected")
COUPON_STATE_STATUSES = ("claimed", "qr_issued", "redeemed")


def _is_record(value: Any) -> bool:
    return isinstance(value, Mapping)


def _nullable_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


@dataclass(frozen=True)
class ApprovalEntry:
    status: str
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status not in APPROVAL_STATUSES:
            raise ValueError(f"Invalid approval status: {self.status}")

    @property
    def is_default(self) -> bool:
        return (
            self.status == "pending"
            and self.decided_at is None
            and self.decided_by is None
            and self.reason is None
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], fallback_status: str = "pending") -> "ApprovalEntry":
        status = raw.get("status")
        return cls(
            status=status if status in APPROVAL_STATUSES else fallback_status,
            decided_at=parse_timestamp(raw.get("decidedAt")),
            decided_by=_nullable_text(raw.get("decidedBy")),
            reason=_nullable_text(raw.get("reason")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "decidedAt": isoformat(self.decided_at),
            "decidedBy": self.decided_by,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class CouponApproval:
    """Live approval fields plus the bounded decision history."""

    status: str = "pending"
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    reason: Optional[str] = None
    history: tuple[ApprovalEntry, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.status not in APPROVAL_STATUSES:
            raise ValueError(f"Invalid approval status: {self.status}")

    @property
    def current(self) -> ApprovalEntry:
        return ApprovalEntry(
            status=self.status,
            decided_at=self.decided_at,
            decided_by=self.decided_by,
            reason=self.reason,
        )

    @classmethod
    def from_entry(cls, entry: ApprovalEntry, history: tuple[ApprovalEntry, ...]) -> "CouponApproval":
        return cls(
            status=entry.status,
            decided_at=entry.decided_at,
            decided_by=entry.decided_by,
            reason=entry.reason,
            history=history,
        )

    @classmethod
    def from_metadata(cls, metadata: Any, is_active: bool) -> "CouponApproval":
        # Coupons that predate the review gate: active ones count as approved
        fallback = cls(status="approved" if is_active else "pending")
        if not _is_record(metadata):
            return fallback
        raw = metadata.get("salesApproval")
        if not _is_record(raw):
            return fallback

        entry = ApprovalEntry.from_dict(raw, fallback_status=fallback.status)
        history_raw = raw.get("history")
        history: tuple[ApprovalEntry, ...] = ()
        if isinstance(history_raw, list):
            history = tuple(ApprovalEntry.from_dict(item) for item in history_raw if _is_record(item))
        return cls.from_entry(entry, history)

    def to_dict(self) -> dict[str, Any]:
        payload = self.current.to_dict()
        payload["history"] = [item.to_dict() for item in self.history]
        return payload


@dataclass(frozen=True)
class CouponState:
    """Coupon progress stored under ``wallet.metadata["couponState"]``."""

    coupon_id: Optional[str] = None
    coupon_code: Optional[str] = None
    status: Optional[str] = None
    claimed_at: Optional[datetime] = None
    qr_token_id: Optional[str] = None
    qr_token_expires_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status is not None and self.status not in COUPON_STATE_STATUSES:
            raise ValueError(f"Invalid coupon state status: {self.status}")
        if self.qr_token_id is not None and self.qr_token_expires_at is None:
            raise ValueError("qr_token_id requires qr_token_expires_at")

    @classmethod
    def claimed(cls, *, coupon_id: str, coupon_code: str, at: datetime) -> "CouponState":
        return cls(
            coupon_id=coupon_id,
            coupon_code=coupon_code,
            status="claimed",
            claimed_at=at,
            last_updated_at=at,
        )

    @classmethod
    def from_metadata(cls, metadata: Any) -> "CouponState":
        if not _is_record(metadata):
            return cls()
        raw = metadata.get("couponState")
        if not _is_record(raw):
            return cls()
        status = raw.get("status")
        if status not in COUPON_STATE_STATUSES:
            status = None
        qr_token_id = _nullable_text(raw.get("qrTokenId"))
        qr_token_expires_at = parse_timestamp(raw.get("qrTokenExpiresAt"))
        if qr_token_id is not None and qr_token_expires_at is None:
            qr_token_id = None
        return cls(
            coupon_id=_nullable_text(raw.get("couponId")),
            coupon_code=_nullable_text(raw.get("couponCode")),
            status=status,
            claimed_at=parse_timestamp(raw.get("claimedAt")),
            qr_token_id=qr_token_id,
            qr_token_expires_at=qr_token_expires_at,
            redeemed_at=parse_timestamp(raw.get("redeemedAt")),
            last_updated_at=parse_timestamp(raw.get("lastUpdatedAt")),
        )

    def with_token(self, *, token_id: str, expires_at: datetime, at: datetime) -> "CouponState":
        return replace(
            self,
            status="qr_issued",
            claimed_at=self.claimed_at or at,
            qr_token_id=token_id,
            qr_token_expires_at=expires_at,
            redeemed_at=None,
            last_updated_at=at,
        )

    def without_token(self, *, at: datetime) -> "CouponState":
        return replace(self, status="claimed", qr_token_id=None, qr_token_expires_at=None, last_updated_at=at)

    def redeemed(self, *, at: datetime) -> "CouponState":
        return replace(
            self,
            status="redeemed",
            qr_token_id=None,
            qr_token_expires_at=None,
            redeemed_at=at,
            last_updated_at=at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "couponId": self.coupon_id,
            "couponCode": self.coupon_code,
            "status": self.status,
            "claimedAt": isoformat(self.claimed_at),
            "qrTokenId": self.qr_token_id,
            "qrTokenExpiresAt": isoformat(self.qr_token_expires_at),
            "redeemedAt": isoformat(self.redeemed_at),
            "lastUpdatedAt": isoformat(self.last_updated_at),
        }
