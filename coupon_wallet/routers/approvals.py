from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from coupon_wallet.core.database import get_db
from coupon_wallet.core.errors import ValidationError
from coupon_wallet.services.coupon_approvals import (
    decide_coupon_approval,
    list_coupons_by_approval,
    resubmit_coupon,
)
from coupon_wallet.services.coupons import coupon_to_dict

router = APIRouter(prefix="/api/sales/approvals", tags=["approvals"])


class DecisionRequest(BaseModel):
    decided_by: Optional[str] = None
    reason: Optional[str] = None


class ResubmitRequest(BaseModel):
    submitted_by: Optional[str] = None


@router.get("")
def list_approvals(
    status: Optional[str] = Query("pending"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    rows = list_coupons_by_approval(db, status=status or None, limit=limit)
    return {"coupons": [coupon_to_dict(coupon, approval) for coupon, approval in rows]}


@router.post("/{coupon_id}/approve")
def approve(coupon_id: str, payload: Optional[DecisionRequest] = None, db: Session = Depends(get_db)):
    payload = payload or DecisionRequest()
    approval = decide_coupon_approval(db, coupon_id, "approved", decided_by=payload.decided_by)
    return {"coupon_id": coupon_id, "approval": approval.to_dict()}


@router.post("/{coupon_id}/reject")
def reject(coupon_id: str, payload: DecisionRequest, db: Session = Depends(get_db)):
    if not payload.reason or not payload.reason.strip():
        raise ValidationError("A reason is required to reject a coupon")
    approval = decide_coupon_approval(
        db,
        coupon_id,
        "rejected",
        decided_by=payload.decided_by,
        reason=payload.reason,
    )
    return {"coupon_id": coupon_id, "approval": approval.to_dict()}


@router.post("/{coupon_id}/resubmit")
def resubmit(coupon_id: str, payload: Optional[ResubmitRequest] = None, db: Session = Depends(get_db)):
    payload = payload or ResubmitRequest()
    approval = resubmit_coupon(db, coupon_id, submitted_by=payload.submitted_by)
    return {"coupon_id": coupon_id, "approval": approval.to_dict()}
