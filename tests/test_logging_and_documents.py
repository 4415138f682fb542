import json
import logging

import pytest

from coupon_wallet.core.logging_setup import JsonFormatter
from coupon_wallet.core.request_context import clear_request_context, set_request_context
from coupon_wallet.services.documents import CouponApproval, CouponState
from tests.fixtures_data import NOW


def _record(message, *args, **extra):
    record = logging.LogRecord("coupon_wallet.tests", logging.INFO, __file__, 1, message, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_request_context_and_masks_secrets():
    set_request_context(request_id="req-1", store_id="store-1", user_id="user-1")
    try:
        payload = json.loads(JsonFormatter("%(message)s").format(_record("issued token=%s billing_key=%s", "abc", "bk_1")))
    finally:
        clear_request_context()

    assert payload["request_id"] == "req-1"
    assert payload["store_id"] == "store-1"
    assert payload["user_id"] == "user-1"
    assert payload["message"] == "issued token=*** billing_key=***"


def test_json_formatter_emits_request_fields_from_extra():
    payload = json.loads(
        JsonFormatter("%(message)s").format(
            _record("request completed", endpoint="/health", method="GET", status_code=200, duration_ms=1.5)
        )
    )
    assert payload["endpoint"] == "/health"
    assert payload["status_code"] == 200
    assert payload["duration_ms"] == 1.5


def test_coupon_state_requires_expiry_for_live_token():
    with pytest.raises(ValueError):
        CouponState(status="qr_issued", qr_token_id="t-1")
    with pytest.raises(ValueError):
        CouponState(status="used")


def test_coupon_state_drops_dangling_token_from_storage():
    state = CouponState.from_metadata({"couponState": {"status": "qr_issued", "qrTokenId": "t-1"}})
    assert state.qr_token_id is None
    assert CouponState.from_metadata("garbage") == CouponState()


def test_redeemed_coupon_state_holds_no_token():
    issued = CouponState.claimed(coupon_id="c-1", coupon_code="SPRING10", at=NOW).with_token(
        token_id="t-1", expires_at=NOW, at=NOW
    )

    redeemed = issued.redeemed(at=NOW)

    assert redeemed.status == "redeemed"
    assert redeemed.qr_token_id is None
    assert redeemed.qr_token_expires_at is None
    assert redeemed.redeemed_at == NOW
    with pytest.raises(ValueError):
        CouponState(status="redeemed", qr_token_id="t-1")
    stored = CouponState.from_metadata({"couponState": {"status": "redeemed", "qrTokenId": "t-1"}})
    assert stored.qr_token_id is None


def test_coupon_state_round_trip_through_metadata():
    state = CouponState.claimed(coupon_id="c-1", coupon_code="SPRING10", at=NOW).with_token(
        token_id="t-1", expires_at=NOW, at=NOW
    )
    assert CouponState.from_metadata({"couponState": state.to_dict()}) == state


def test_approval_with_unknown_status_falls_back():
    approval = CouponApproval.from_metadata({"salesApproval": {"status": "maybe"}}, is_active=True)
    assert approval.status == "approved"
    with pytest.raises(ValueError):
        CouponApproval(status="maybe")
