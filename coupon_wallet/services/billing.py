"""Subscription billing state driven by payment processor webhooks.

Webhooks are matched to a store through its billing profile, then folded into
the single ``store_subscriptions`` row of that store. ``stores.subscription_status``
mirrors the subscription status after every write so entitlement checks can
read either.
"""

from __future__ import annotations

import calendar
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from coupon_wallet.core.config import BILLING_GRACE_FALLBACK_DAYS, SUBSCRIPTION_EVENT_LIMIT
from coupon_wallet.core.errors import NotFoundError, StorageError, ValidationError, storage_guard
from coupon_wallet.core.timeutils import as_utc, isoformat, parse_timestamp, utcnow
from coupon_wallet.models.store import Store, StoreBillingProfile, StoreSubscription, SubscriptionPlan
from coupon_wallet.services.audit_trail import record_event_safely
from coupon_wallet.services.stores import fetch_subscription

logger = logging.getLogger(__name__)
BILLING_PREFIX = "[BILLING]"

SUCCESS_EVENTS = frozenset({"PAYMENT_APPROVED", "BILLING_APPROVED", "PAYMENT_SUCCEEDED"})
FAILURE_EVENTS = frozenset({"PAYMENT_FAILED", "BILLING_FAILED", "PAYMENT_DECLINED"})
CANCEL_EVENTS = frozenset({"BILLING_KEY_DELETED", "SUBSCRIPTION_CANCELED", "PAYMENT_CANCELED"})

BILLING_INTERVALS = ("day", "week", "month", "year")
WEBHOOK_SOURCE = "api.billing.webhook"

_UNSET: Any = object()


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_period_end(start: datetime, interval: str, count: Any) -> datetime:
    """End of a billing period; month and year keep the day, clamped to month end."""
    if isinstance(count, bool) or not isinstance(count, (int, float)) or count != count or count < 1:
        safe_count = 1
    else:
        safe_count = int(count)

    if interval == "day":
        return start + timedelta(days=safe_count)
    if interval == "week":
        return start + timedelta(weeks=safe_count)
    if interval == "year":
        return _add_months(start, 12 * safe_count)
    return _add_months(start, safe_count)


@dataclass(frozen=True)
class BillingWebhook:
    event_type: str
    billing_key: Optional[str] = None
    customer_key: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(
        cls,
        *,
        event_type: Any,
        billing_key: Any = None,
        customer_key: Any = None,
        data: Any = None,
    ) -> "BillingWebhook":
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("eventType is required")
        billing_key = billing_key if isinstance(billing_key, str) and billing_key else None
        customer_key = customer_key if isinstance(customer_key, str) and customer_key else None
        if billing_key is None and customer_key is None:
            raise ValidationError("billingKey or customerKey is required")
        return cls(
            event_type=event_type.strip().upper(),
            billing_key=billing_key,
            customer_key=customer_key,
            data=dict(data) if isinstance(data, Mapping) else {},
        )

    @property
    def audit_type(self) -> str:
        return f"billing.webhook_{self.event_type.lower()}"


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    subscription_id: Optional[str] = None

    @property
    def accepted_only(self) -> bool:
        return self.status == "unmatched"


def _append_event(metadata: dict[str, Any], event: Mapping[str, Any]) -> dict[str, Any]:
    events = metadata.get("events")
    events = list(events) if isinstance(events, list) else []
    events.append(dict(event))
    metadata["events"] = events[-SUBSCRIPTION_EVENT_LIMIT:]
    return metadata


def upsert_store_subscription(
    db: Session,
    store_id: str,
    *,
    status: str,
    plan_id: Optional[str] = _UNSET,
    billing_profile_id: Optional[str] = _UNSET,
    current_period_start: Optional[datetime] = _UNSET,
    current_period_end: Optional[datetime] = _UNSET,
    grace_until: Optional[datetime] = _UNSET,
    canceled_at: Optional[datetime] = _UNSET,
    metadata_patch: Optional[Mapping[str, Any]] = None,
    event: Optional[Mapping[str, Any]] = None,
) -> StoreSubscription:
    """Write the store's subscription row. Fields left unset keep their value."""
    subscription = fetch_subscription(db, store_id)
    if subscription is None:
        subscription = StoreSubscription(store_id=store_id, meta={})
        db.add(subscription)

    subscription.status = status
    for attribute, value in (
        ("plan_id", plan_id),
        ("billing_profile_id", billing_profile_id),
        ("current_period_start", current_period_start),
        ("current_period_end", current_period_end),
        ("grace_until", grace_until),
        ("canceled_at", canceled_at),
    ):
        if value is not _UNSET:
            setattr(subscription, attribute, value)

    metadata = copy.deepcopy(subscription.meta) if isinstance(subscription.meta, dict) else {}
    if metadata_patch:
        metadata.update(copy.deepcopy(dict(metadata_patch)))
    if event:
        metadata = _append_event(metadata, event)
    subscription.meta = metadata

    with storage_guard(db, "store_subscriptions.upsert", store_id=store_id, status=status):
        db.flush()
        db.query(Store).filter(Store.id == store_id).update(
            {Store.subscription_status: status}, synchronize_session=False
        )
        db.commit()
        db.refresh(subscription)
    logger.info("%s subscription store_id=%s status=%s", BILLING_PREFIX, store_id, status)
    return subscription


def find_billing_profile(db: Session, webhook: BillingWebhook) -> Optional[StoreBillingProfile]:
    with storage_guard(db, "store_billing_profiles.lookup"):
        if webhook.billing_key:
            profile = (
                db.query(StoreBillingProfile)
                .filter(StoreBillingProfile.billing_key == webhook.billing_key)
                .first()
            )
            if profile is not None:
                return profile
        if webhook.customer_key:
            return (
                db.query(StoreBillingProfile)
                .filter(StoreBillingProfile.customer_key == webhook.customer_key)
                .order_by(StoreBillingProfile.created_at.desc(), StoreBillingProfile.id.desc())
                .first()
            )
    return None


def _load_plan(db: Session, plan_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not plan_id:
        return None
    try:
        with storage_guard(db, "subscription_plans.fetch", plan_id=plan_id):
            return db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()
    except StorageError:
        logger.warning("%s plan lookup failed plan_id=%s; using monthly default", BILLING_PREFIX, plan_id)
        return None


def revoke_billing_profile(db: Session, profile_id: str) -> bool:
    with storage_guard(db, "store_billing_profiles.revoke", profile_id=profile_id):
        count = (
            db.query(StoreBillingProfile)
            .filter(StoreBillingProfile.id == profile_id)
            .update({StoreBillingProfile.status: "revoked"}, synchronize_session=False)
        )
        db.commit()
    return count == 1


def _record_webhook_event(
    db: Session,
    webhook: BillingWebhook,
    *,
    at: datetime,
    outcome: str,
    store_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> None:
    record_event_safely(
        db,
        type=webhook.audit_type,
        occurred_at=at,
        message=f"Billing webhook {webhook.event_type} {outcome}",
        context={"storeId": store_id, "subscriptionId": subscription_id, "outcome": outcome},
        details=details,
        source=WEBHOOK_SOURCE,
    )


def _handle_success(
    db: Session, webhook: BillingWebhook, profile: StoreBillingProfile, subscription: Optional[StoreSubscription], now: datetime
) -> WebhookOutcome:
    plan_id = subscription.plan_id if subscription is not None else None
    plan = _load_plan(db, plan_id)
    interval = plan.billing_interval if plan is not None and plan.billing_interval in BILLING_INTERVALS else "month"
    count = plan.interval_count if plan is not None else 1

    start = parse_timestamp(webhook.data.get("approvedAt")) or now
    period_end = calculate_period_end(start, interval, count)
    details = {"orderId": webhook.data.get("orderId"), "paymentKey": webhook.data.get("paymentKey")}

    record = upsert_store_subscription(
        db,
        profile.store_id,
        status="active",
        plan_id=plan_id,
        billing_profile_id=profile.id,
        current_period_start=start,
        current_period_end=period_end,
        grace_until=period_end,
        metadata_patch={
            "lastWebhookEvent": webhook.event_type,
            "lastPayment": {
                "orderId": webhook.data.get("orderId"),
                "paymentKey": webhook.data.get("paymentKey") or webhook.billing_key,
                "approvedAt": isoformat(start),
            },
        },
        event={"type": webhook.audit_type, "at": isoformat(start), "details": details},
    )
    _record_webhook_event(
        db, webhook, at=start, outcome="processed", store_id=profile.store_id, subscription_id=record.id, details=details
    )
    return WebhookOutcome(status="processed", subscription_id=record.id)


def _handle_failure(
    db: Session, webhook: BillingWebhook, profile: StoreBillingProfile, subscription: Optional[StoreSubscription], now: datetime
) -> WebhookOutcome:
    failed_at = parse_timestamp(webhook.data.get("failedAt")) or now
    existing_end = as_utc(subscription.current_period_end) if subscription is not None else None
    grace_until = existing_end or calculate_period_end(failed_at, "day", BILLING_GRACE_FALLBACK_DAYS)
    details = {"orderId": webhook.data.get("orderId")}

    record = upsert_store_subscription(
        db,
        profile.store_id,
        status="grace",
        plan_id=subscription.plan_id if subscription is not None else None,
        billing_profile_id=profile.id,
        grace_until=grace_until,
        metadata_patch={
            "lastWebhookEvent": webhook.event_type,
            "lastPaymentError": webhook.data.get("message"),
            "lastPaymentOrderId": webhook.data.get("orderId"),
            "lastPaymentFailedAt": isoformat(failed_at),
        },
        event={"type": webhook.audit_type, "at": isoformat(failed_at), "details": details},
    )
    _record_webhook_event(
        db, webhook, at=failed_at, outcome="grace", store_id=profile.store_id, subscription_id=record.id, details=details
    )
    return WebhookOutcome(status="grace", subscription_id=record.id)


def _handle_cancel(
    db: Session, webhook: BillingWebhook, profile: StoreBillingProfile, subscription: Optional[StoreSubscription], now: datetime
) -> WebhookOutcome:
    canceled_at = (
        parse_timestamp(webhook.data.get("canceledAt"))
        or parse_timestamp(webhook.data.get("deletedAt"))
        or now
    )
    details = {"billingKey": webhook.billing_key}

    record = upsert_store_subscription(
        db,
        profile.store_id,
        status="canceled",
        plan_id=subscription.plan_id if subscription is not None else None,
        billing_profile_id=profile.id,
        grace_until=None,
        canceled_at=canceled_at,
        metadata_patch={"lastWebhookEvent": webhook.event_type},
        event={"type": webhook.audit_type, "at": isoformat(canceled_at), "details": details},
    )

    try:
        revoke_billing_profile(db, profile.id)
    except StorageError:
        logger.error("%s failed to revoke billing profile profile_id=%s", BILLING_PREFIX, profile.id)

    _record_webhook_event(
        db, webhook, at=canceled_at, outcome="canceled", store_id=profile.store_id, subscription_id=record.id, details=details
    )
    return WebhookOutcome(status="canceled", subscription_id=record.id)


def handle_billing_webhook(db: Session, webhook: BillingWebhook, now: Optional[datetime] = None) -> WebhookOutcome:
    now = as_utc(now) or utcnow()

    profile = find_billing_profile(db, webhook)
    if profile is None:
        logger.warning(
            "%s webhook for unknown billing profile event=%s customer_key=%s",
            BILLING_PREFIX,
            webhook.event_type,
            webhook.customer_key,
        )
        return WebhookOutcome(status="unmatched")

    subscription = fetch_subscription(db, profile.store_id)

    if webhook.event_type in SUCCESS_EVENTS:
        return _handle_success(db, webhook, profile, subscription, now)
    if webhook.event_type in FAILURE_EVENTS:
        return _handle_failure(db, webhook, profile, subscription, now)
    if webhook.event_type in CANCEL_EVENTS:
        return _handle_cancel(db, webhook, profile, subscription, now)

    logger.info("%s ignored webhook event=%s", BILLING_PREFIX, webhook.event_type)
    _record_webhook_event(db, webhook, at=now, outcome="ignored", store_id=profile.store_id)
    return WebhookOutcome(status="ignored", subscription_id=subscription.id if subscription is not None else None)


def register_billing_profile(
    db: Session,
    *,
    store_id: str,
    billing_key: str,
    customer_key: str,
    provider: str = "toss",
) -> StoreBillingProfile:
    """Bind an already issued billing key to a store and make it the active one."""
    if not billing_key or not billing_key.strip():
        raise ValidationError("billingKey is required")
    if not customer_key or not customer_key.strip():
        raise ValidationError("customerKey is required")

    with storage_guard(db, "stores.fetch", store_id=store_id):
        store = db.query(Store).filter(Store.id == store_id).first()
    if store is None:
        raise NotFoundError(f"Store {store_id} not found")

    profile = StoreBillingProfile(
        store_id=store_id,
        provider=provider,
        billing_key=billing_key.strip(),
        customer_key=customer_key.strip(),
        status="active",
    )
    with storage_guard(db, "store_billing_profiles.insert", store_id=store_id):
        db.add(profile)
        db.commit()
        db.refresh(profile)

    try:
        with storage_guard(db, "store_billing_profiles.revoke_previous", store_id=store_id):
            db.query(StoreBillingProfile).filter(
                StoreBillingProfile.store_id == store_id,
                StoreBillingProfile.status == "active",
                StoreBillingProfile.id != profile.id,
            ).update({StoreBillingProfile.status: "revoked"}, synchronize_session=False)
            db.commit()
    except StorageError:
        logger.error("%s failed to revoke previous billing profiles store_id=%s", BILLING_PREFIX, store_id)

    now = utcnow()
    current = fetch_subscription(db, store_id)
    upsert_store_subscription(
        db,
        store_id,
        status=current.status if current is not None else store.subscription_status,
        billing_profile_id=profile.id,
        metadata_patch={"billingProfileRegisteredAt": isoformat(now)},
        event={"type": "billing.profile_registered", "at": isoformat(now), "details": {"profileId": profile.id}},
    )
    record_event_safely(
        db,
        type="billing.profile_registered",
        occurred_at=now,
        message="Billing profile registered",
        context={"storeId": store_id, "profileId": profile.id},
        source="api.billing.profiles",
    )
    return profile
