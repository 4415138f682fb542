from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from coupon_wallet.core.database import get_db
from coupon_wallet.core.request_context import set_request_context
from coupon_wallet.services.coupon_claims import claim_coupon, get_coupon
from coupon_wallet.services.coupons import coupon_to_dict, create_coupon, list_claimable_coupons
from coupon_wallet.services.wallets import wallet_to_dict

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


class CouponCreate(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    store_id: Optional[str] = None
    code: str = Field(..., min_length=1, max_length=64)
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: str = "percentage"
    discount_value: Decimal = Field(..., gt=0)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_redemptions: Optional[int] = Field(None, ge=1)
    metadata: Optional[Dict[str, Any]] = None


class ClaimRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    wallet_id: str = Field(..., min_length=1)


@router.post("", status_code=status.HTTP_201_CREATED)
def create(payload: CouponCreate, db: Session = Depends(get_db)):
    coupon = create_coupon(
        db,
        merchant_id=payload.merchant_id,
        store_id=payload.store_id,
        code=payload.code,
        name=payload.name,
        description=payload.description,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        start_at=payload.start_at,
        end_at=payload.end_at,
        max_redemptions=payload.max_redemptions,
        metadata=payload.metadata,
    )
    return coupon_to_dict(coupon)


@router.get("")
def list_claimable(db: Session = Depends(get_db)):
    return {"coupons": [coupon_to_dict(coupon) for coupon in list_claimable_coupons(db)]}


@router.get("/{coupon_id}")
def read(coupon_id: str, db: Session = Depends(get_db)):
    return coupon_to_dict(get_coupon(db, coupon_id))


@router.post("/{coupon_id}/claim")
def claim(coupon_id: str, payload: ClaimRequest, db: Session = Depends(get_db)):
    set_request_context(user_id=payload.user_id)
    result = claim_coupon(db, coupon_id, payload.user_id, payload.wallet_id)
    return {
        "message": "Coupon claimed",
        "coupon": coupon_to_dict(result.coupon),
        "wallet": wallet_to_dict(result.wallet),
    }
