from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from coupon_wallet.core.database import get_db
from coupon_wallet.core.request_context import set_request_context
from coupon_wallet.core.timeutils import isoformat
from coupon_wallet.services.billing import BillingWebhook, handle_billing_webhook, register_billing_profile

router = APIRouter(prefix="/api/billing", tags=["billing"])


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: Optional[str] = Field(None, alias="eventType")
    billing_key: Optional[str] = Field(None, alias="billingKey")
    customer_key: Optional[str] = Field(None, alias="customerKey")
    data: Optional[Dict[str, Any]] = None


class BillingProfileCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    store_id: str = Field(..., alias="storeId", min_length=1)
    billing_key: str = Field(..., alias="billingKey", min_length=1)
    customer_key: str = Field(..., alias="customerKey", min_length=1)


@router.post("/webhook")
def billing_webhook(payload: WebhookPayload, response: Response, db: Session = Depends(get_db)):
    webhook = BillingWebhook.from_payload(
        event_type=payload.event_type,
        billing_key=payload.billing_key,
        customer_key=payload.customer_key,
        data=payload.data,
    )
    outcome = handle_billing_webhook(db, webhook)
    if outcome.accepted_only:
        response.status_code = status.HTTP_202_ACCEPTED
        return {"status": outcome.status, "message": "No matching billing profile"}
    body = {"status": outcome.status}
    if outcome.subscription_id:
        body["subscription_id"] = outcome.subscription_id
    return body


@router.post("/profiles", status_code=status.HTTP_201_CREATED)
def create_billing_profile(payload: BillingProfileCreate, db: Session = Depends(get_db)):
    set_request_context(store_id=payload.store_id)
    profile = register_billing_profile(
        db,
        store_id=payload.store_id,
        billing_key=payload.billing_key,
        customer_key=payload.customer_key,
    )
    return {
        "id": profile.id,
        "store_id": profile.store_id,
        "provider": profile.provider,
        "customer_key": profile.customer_key,
        "status": profile.status,
        "created_at": isoformat(profile.created_at),
    }
