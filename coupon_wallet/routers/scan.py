from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from coupon_wallet.core.database import get_db
from coupon_wallet.core.request_context import set_request_context
from coupon_wallet.core.timeutils import isoformat
from coupon_wallet.services.scans import verify_scan
from coupon_wallet.services.wallets import wallet_to_dict

router = APIRouter(prefix="/api/scan", tags=["scan"])


class ScanVerifyRequest(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    token: Optional[str] = None


@router.post("/verify")
def verify(payload: ScanVerifyRequest, db: Session = Depends(get_db)):
    set_request_context(user_id=payload.merchant_id)
    outcome = verify_scan(db, payload.merchant_id, payload.token)
    return {
        "result": outcome.result,
        "message": outcome.message,
        "redeemed_at": isoformat(outcome.redemption.redeemed_at),
        "redemption_id": outcome.redemption.id,
        "coupon": {"id": outcome.coupon.id, "code": outcome.coupon.code},
        "wallet": wallet_to_dict(outcome.wallet),
        "store_id": outcome.store_id,
    }
