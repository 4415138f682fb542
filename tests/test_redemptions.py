from datetime import timedelta

import pytest

from coupon_wallet.core.errors import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    StorageError,
    TokenExpiredError,
    ValidationError,
)
from coupon_wallet.core.timeutils import as_utc
from coupon_wallet.models.coupon import Coupon, CouponRedemption
from coupon_wallet.models.event import Event
from coupon_wallet.models.qr_token import QrToken
from coupon_wallet.models.store import StoreSubscription
from coupon_wallet.services.coupon_claims import claim_coupon
from coupon_wallet.services.redemptions import issue_wallet_qr, redeem_wallet_token
from coupon_wallet.services.wallets import coupon_state_of, get_wallet
from tests.fixtures_data import CUSTOMER_ID, NOW, OTHER_CUSTOMER_ID


@pytest.fixture
def claimed(db_session, seed):
    seed.store()
    coupon = seed.coupon(max_redemptions=2)
    wallet = seed.wallet()
    claim_coupon(db_session, coupon.id, CUSTOMER_ID, wallet.id, now=NOW)
    return coupon, wallet


def _redeemed_count(db, coupon_id):
    coupon = db.get(Coupon, coupon_id)
    db.refresh(coupon)
    return coupon.redeemed_count


def test_issue_qr_moves_wallet_to_qr_issued(db_session, claimed):
    coupon, wallet = claimed

    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)

    assert issued.wallet.status == "qr_issued"
    assert issued.expires_at == NOW + timedelta(seconds=120)
    state = coupon_state_of(issued.wallet)
    assert state.status == "qr_issued"
    assert state.qr_token_id == issued.token_id
    assert state.qr_token_expires_at == issued.expires_at


def test_issue_qr_requires_owner_and_claimed_coupon(db_session, seed, claimed):
    coupon, wallet = claimed
    with pytest.raises(ConflictError):
        issue_wallet_qr(db_session, wallet.id, OTHER_CUSTOMER_ID, now=NOW)
    with pytest.raises(ConflictError):
        issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, coupon_id="other-coupon", now=NOW)

    empty = seed.wallet(user_id=OTHER_CUSTOMER_ID)
    with pytest.raises(ValidationError):
        issue_wallet_qr(db_session, empty.id, OTHER_CUSTOMER_ID, now=NOW)


def test_issue_qr_checks_store_entitlement(db_session, claimed):
    coupon, wallet = claimed
    subscription = db_session.query(StoreSubscription).one()
    subscription.status = "canceled"
    db_session.commit()

    with pytest.raises(AccessDeniedError) as excinfo:
        issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)
    assert excinfo.value.feature == "wallet.qr"


def test_reissue_keeps_a_single_live_token(db_session, claimed):
    coupon, wallet = claimed
    first = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)
    second = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW + timedelta(seconds=10))

    with pytest.raises(TokenExpiredError):
        redeem_wallet_token(db_session, wallet.id, first.token, now=NOW + timedelta(seconds=20))

    result = redeem_wallet_token(db_session, wallet.id, second.token, now=NOW + timedelta(seconds=20))
    assert result.wallet.status == "redeemed"


def test_full_redemption_flow(db_session, claimed):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)

    result = redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=30))

    assert result.wallet.status == "redeemed"
    assert result.coupon.redeemed_count == 1
    assert result.redemption.qr_token_id == issued.token_id
    state = coupon_state_of(result.wallet)
    assert state.status == "redeemed"
    assert state.redeemed_at == NOW + timedelta(seconds=30)
    assert state.qr_token_id is None
    assert state.qr_token_expires_at is None
    assert db_session.query(CouponRedemption).count() == 1
    types = [event.type for event in db_session.query(Event).order_by(Event.created_at).all()]
    assert types == ["coupon.claimed", "coupon.qr_issued", "coupon.redeemed"]


def test_second_redemption_of_same_token_conflicts(db_session, claimed):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)
    redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=1))

    with pytest.raises(ConflictError) as excinfo:
        redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=2))

    assert excinfo.value.code == "token_redeemed"
    assert _redeemed_count(db_session, coupon.id) == 1


def test_expired_token_returns_wallet_to_claimed(db_session, claimed):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)

    with pytest.raises(TokenExpiredError) as excinfo:
        redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=121))

    assert excinfo.value.status_code == 410
    current = get_wallet(db_session, wallet.id)
    assert current.status == "claimed"
    state = coupon_state_of(current)
    assert state.qr_token_id is None
    assert state.coupon_id == coupon.id
    assert _redeemed_count(db_session, coupon.id) == 0


def test_unknown_token_is_not_found(db_session, claimed):
    coupon, wallet = claimed
    with pytest.raises(NotFoundError):
        redeem_wallet_token(db_session, wallet.id, "not-a-token", now=NOW)
    with pytest.raises(ValidationError):
        redeem_wallet_token(db_session, wallet.id, "   ", now=NOW)


def test_exhausted_quota_blocks_redemption_without_consuming_token(db_session, claimed):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)
    db_session.query(Coupon).filter(Coupon.id == coupon.id).update({Coupon.redeemed_count: 2})
    db_session.commit()

    with pytest.raises(ConflictError) as excinfo:
        redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=1))

    assert excinfo.value.code == "coupon_exhausted"
    assert _redeemed_count(db_session, coupon.id) == 2
    assert get_wallet(db_session, wallet.id).status == "qr_issued"


def test_lost_token_race_releases_quota(db_session, claimed, monkeypatch):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)
    monkeypatch.setattr("coupon_wallet.services.redemptions.consume_token", lambda *args: False)

    with pytest.raises(ConflictError):
        redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=1))

    assert _redeemed_count(db_session, coupon.id) == 0
    assert db_session.query(CouponRedemption).count() == 0


def test_stale_token_left_live_by_a_new_claim_cannot_redeem(db_session, seed, claimed, monkeypatch):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)
    other = seed.coupon(code="SUMMER5")

    def failing_invalidation(*args):
        raise StorageError("Storage failure during qr_tokens.invalidate")

    monkeypatch.setattr("coupon_wallet.services.coupon_claims.invalidate_live_tokens", failing_invalidation)
    claim_coupon(db_session, other.id, CUSTOMER_ID, wallet.id, now=NOW + timedelta(seconds=5))

    with pytest.raises(ConflictError) as excinfo:
        redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=10))

    assert excinfo.value.code == "token_superseded"
    assert _redeemed_count(db_session, coupon.id) == 0
    assert db_session.query(CouponRedemption).count() == 0
    token_row = db_session.get(QrToken, issued.token_id)
    db_session.refresh(token_row)
    assert token_row.redeemed_at is None
    current = get_wallet(db_session, wallet.id)
    assert current.status == "claimed"
    assert coupon_state_of(current).coupon_id == other.id


def test_failed_wallet_move_reverts_quota_and_redemption_row(db_session, claimed, monkeypatch):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)

    def losing_transition(*args, **kwargs):
        raise ConflictError("Wallet changed concurrently", code="wallet_conflict")

    monkeypatch.setattr("coupon_wallet.services.redemptions.transition", losing_transition)

    with pytest.raises(ConflictError) as excinfo:
        redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=1))

    assert excinfo.value.code == "wallet_conflict"
    assert _redeemed_count(db_session, coupon.id) == 0
    assert db_session.query(CouponRedemption).count() == 0
    assert get_wallet(db_session, wallet.id).status == "qr_issued"


def test_lost_qr_issue_race_leaves_no_live_token(db_session, claimed, monkeypatch):
    coupon, wallet = claimed

    def losing_transition(*args, **kwargs):
        raise ConflictError("Wallet changed concurrently", code="wallet_conflict")

    monkeypatch.setattr("coupon_wallet.services.redemptions.transition", losing_transition)

    with pytest.raises(ConflictError):
        issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)

    tokens = db_session.query(QrToken).filter(QrToken.wallet_id == wallet.id).all()
    assert len(tokens) == 1
    db_session.refresh(tokens[0])
    assert as_utc(tokens[0].expires_at) <= NOW
    assert get_wallet(db_session, wallet.id).status == "claimed"


def test_redeemed_wallet_can_claim_again(db_session, claimed):
    coupon, wallet = claimed
    issued = issue_wallet_qr(db_session, wallet.id, CUSTOMER_ID, now=NOW)
    redeem_wallet_token(db_session, wallet.id, issued.token, now=NOW + timedelta(seconds=1))

    result = claim_coupon(db_session, coupon.id, CUSTOMER_ID, wallet.id, now=NOW + timedelta(minutes=5))

    assert result.wallet.status == "claimed"
    assert coupon_state_of(result.wallet).redeemed_at is None
    assert _redeemed_count(db_session, coupon.id) == 1
