from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from coupon_wallet.core.config import APPROVAL_HISTORY_LIMIT
from coupon_wallet.core.errors import ConflictError, ValidationError, storage_guard
from coupon_wallet.core.timeutils import as_utc, utcnow
from coupon_wallet.models.coupon import Coupon
from coupon_wallet.services.audit_trail import record_event_safely
from coupon_wallet.services.coupon_claims import get_coupon
from coupon_wallet.services.documents import APPROVAL_STATUSES, ApprovalEntry, CouponApproval

logger = logging.getLogger(__name__)
APPROVAL_PREFIX = "[APPROVAL]"
DECISION_STATUSES = ("approved", "rejected")


def resolve_coupon_approval(coupon: Coupon) -> CouponApproval:
    return CouponApproval.from_metadata(coupon.meta, bool(coupon.is_active))


def _clean_text(value: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _next_approval(current: CouponApproval, entry: ApprovalEntry) -> CouponApproval:
    # The newest history entry mirrors the live fields, so it is replaced, not duplicated
    prior = list(current.history[:-1])
    if not current.current.is_default:
        prior.append(current.current)
    keep = max(0, APPROVAL_HISTORY_LIMIT - 1)
    trimmed = prior[-keep:] if keep else []
    return CouponApproval.from_entry(entry, tuple(trimmed) + (entry,))


def _write_approval(
    db: Session,
    coupon: Coupon,
    approval: CouponApproval,
    *,
    actor_id: Optional[str],
    now: datetime,
) -> CouponApproval:
    metadata = copy.deepcopy(coupon.meta) if isinstance(coupon.meta, dict) else {}
    metadata["salesApproval"] = approval.to_dict()

    values = {Coupon.meta: metadata, Coupon.version: Coupon.version + 1}
    should_activate = approval.status == "approved"
    if bool(coupon.is_active) != should_activate:
        values[Coupon.is_active] = should_activate

    with storage_guard(db, "coupons.approval", coupon_id=coupon.id, status=approval.status):
        updated = (
            db.query(Coupon)
            .filter(Coupon.id == coupon.id, Coupon.version == coupon.version)
            .update(values, synchronize_session=False)
        )
        db.commit()
    if updated != 1:
        raise ConflictError(f"Coupon {coupon.id} changed concurrently", code="coupon_conflict")

    logger.info("%s coupon_id=%s status=%s actor=%s", APPROVAL_PREFIX, coupon.id, approval.status, actor_id)
    record_event_safely(
        db,
        type=f"coupon.approval_{approval.status}",
        occurred_at=now,
        message=f"Coupon {coupon.code} {approval.status}",
        context={"couponId": coupon.id, "storeId": coupon.store_id, "merchantId": coupon.merchant_id, "actorId": actor_id},
        details={"reason": approval.reason, "historySize": len(approval.history)},
        source="api.sales.approvals",
    )
    return approval


def decide_coupon_approval(
    db: Session,
    coupon_id: str,
    status: str,
    decided_by: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponApproval:
    if status not in DECISION_STATUSES:
        raise ValidationError(f"Unsupported approval decision: {status}")
    now = as_utc(now) or utcnow()

    coupon = get_coupon(db, coupon_id)
    current = resolve_coupon_approval(coupon)
    entry = ApprovalEntry(
        status=status,
        decided_at=now,
        decided_by=_clean_text(decided_by),
        reason=_clean_text(reason) if status == "rejected" else None,
    )
    return _write_approval(db, coupon, _next_approval(current, entry), actor_id=entry.decided_by, now=now)


def resubmit_coupon(
    db: Session,
    coupon_id: str,
    submitted_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponApproval:
    """Send a rejected coupon back to the review queue."""
    now = as_utc(now) or utcnow()
    coupon = get_coupon(db, coupon_id)
    current = resolve_coupon_approval(coupon)
    if current.status != "rejected":
        raise ConflictError(f"Only rejected coupons can be resubmitted (status={current.status})", code="invalid_transition")
    entry = ApprovalEntry(status="pending", decided_at=now, decided_by=_clean_text(submitted_by))
    return _write_approval(db, coupon, _next_approval(current, entry), actor_id=entry.decided_by, now=now)


def list_coupons_by_approval(db: Session, status: Optional[str] = None, limit: int = 100) -> list[tuple[Coupon, CouponApproval]]:
    if status is not None and status not in APPROVAL_STATUSES:
        raise ValidationError(f"Unknown approval status: {status}")
    with storage_guard(db, "coupons.list", status=status):
        coupons = db.query(Coupon).order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()
    rows = []
    for coupon in coupons:
        approval = resolve_coupon_approval(coupon)
        if status is None or approval.status == status:
            rows.append((coupon, approval))
        if len(rows) >= limit:
            break
    return rows
