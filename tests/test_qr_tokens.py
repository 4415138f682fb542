import hashlib
import re
from datetime import timedelta
from unittest.mock import patch

import pytest

from coupon_wallet.core.errors import StorageError
from coupon_wallet.core.timeutils import as_utc
from coupon_wallet.models.qr_token import QrToken
from coupon_wallet.services.qr_tokens import (
    consume_token,
    generate_token,
    hash_token,
    invalidate_live_tokens,
    issue_token,
)
from tests.fixtures_data import NOW


def test_generate_token_is_url_safe_without_padding():
    token = generate_token()
    assert re.fullmatch(r"[A-Za-z0-9_-]+", token)
    assert len(token) == 43
    assert generate_token() != token


def test_hash_token_is_sha256_hex():
    assert hash_token("abc") == hashlib.sha256(b"abc").hexdigest()
    assert len(hash_token("abc")) == 64


def test_issue_token_stores_only_the_digest(db_session, seed):
    wallet = seed.wallet(status="claimed")
    coupon = seed.coupon()

    issued = issue_token(db_session, wallet, coupon, NOW)

    assert issued.record.token_hash == hash_token(issued.token)
    assert issued.token not in {issued.record.token_hash, issued.record.id}
    assert as_utc(issued.record.expires_at) == NOW + timedelta(seconds=120)


def test_second_issuance_leaves_one_live_token(db_session, seed):
    wallet = seed.wallet(status="claimed")
    coupon = seed.coupon()

    first = issue_token(db_session, wallet, coupon, NOW)
    second = issue_token(db_session, wallet, coupon, NOW + timedelta(seconds=5))

    check_at = NOW + timedelta(seconds=6)
    live = [
        token
        for token in db_session.query(QrToken).filter(QrToken.wallet_id == wallet.id).all()
        if token.redeemed_at is None and as_utc(token.expires_at) > check_at
    ]
    assert [token.id for token in live] == [second.record.id]
    assert first.record.id != second.record.id


def test_issuance_aborts_when_invalidation_fails(db_session, seed):
    wallet = seed.wallet(status="claimed")
    coupon = seed.coupon()

    with patch("coupon_wallet.services.qr_tokens.invalidate_live_tokens", side_effect=StorageError("boom")):
        with pytest.raises(StorageError):
            issue_token(db_session, wallet, coupon, NOW)
    assert db_session.query(QrToken).count() == 0


def test_consume_token_has_exactly_one_winner(db_session, seed):
    wallet = seed.wallet(status="qr_issued")
    coupon = seed.coupon()
    issued = issue_token(db_session, wallet, coupon, NOW)

    assert consume_token(db_session, issued.record, NOW + timedelta(seconds=10)) is True
    assert consume_token(db_session, issued.record, NOW + timedelta(seconds=11)) is False


def test_consume_token_refuses_expired_tokens(db_session, seed):
    wallet = seed.wallet(status="qr_issued")
    coupon = seed.coupon()
    issued = issue_token(db_session, wallet, coupon, NOW)

    assert consume_token(db_session, issued.record, NOW + timedelta(seconds=121)) is False


def test_invalidate_live_tokens_ignores_redeemed_and_expired(db_session, seed):
    wallet = seed.wallet(status="qr_issued")
    coupon = seed.coupon()
    redeemed = issue_token(db_session, wallet, coupon, NOW)
    consume_token(db_session, redeemed.record, NOW + timedelta(seconds=1))
    issue_token(db_session, wallet, coupon, NOW + timedelta(seconds=2))

    assert invalidate_live_tokens(db_session, wallet.id, NOW + timedelta(seconds=3)) == 1
    assert invalidate_live_tokens(db_session, wallet.id, NOW + timedelta(seconds=4)) == 0
