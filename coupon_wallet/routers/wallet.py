from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from coupon_wallet.core.database import get_db
from coupon_wallet.core.request_context import set_request_context
from coupon_wallet.core.timeutils import isoformat
from coupon_wallet.services.coupon_claims import get_owned_wallet
from coupon_wallet.services.coupons import coupon_to_dict
from coupon_wallet.services.redemptions import issue_wallet_qr, redeem_wallet_token
from coupon_wallet.services.wallets import wallet_to_dict

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


class QrRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    coupon_id: Optional[str] = None


class RedeemRequest(BaseModel):
    token: str = Field(..., min_length=1)


@router.get("/{wallet_id}")
def read(wallet_id: str, user_id: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    set_request_context(user_id=user_id)
    return wallet_to_dict(get_owned_wallet(db, wallet_id, user_id))


@router.post("/{wallet_id}/qr", status_code=status.HTTP_201_CREATED)
def issue_qr(wallet_id: str, payload: QrRequest, db: Session = Depends(get_db)):
    set_request_context(user_id=payload.user_id)
    issued = issue_wallet_qr(db, wallet_id, payload.user_id, coupon_id=payload.coupon_id)
    return {
        "token": issued.token,
        "token_id": issued.token_id,
        "expires_at": isoformat(issued.expires_at),
        "coupon": {"id": issued.coupon.id, "code": issued.coupon.code},
        "wallet": wallet_to_dict(issued.wallet),
    }


@router.post("/{wallet_id}/redeem")
def redeem(wallet_id: str, payload: RedeemRequest, db: Session = Depends(get_db)):
    result = redeem_wallet_token(db, wallet_id, payload.token)
    return {
        "redeemed_at": isoformat(result.redemption.redeemed_at),
        "redemption_id": result.redemption.id,
        "coupon": coupon_to_dict(result.coupon),
        "wallet": wallet_to_dict(result.wallet),
    }
