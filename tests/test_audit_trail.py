from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from coupon_wallet.core.errors import StorageError, ValidationError
from coupon_wallet.core.timeutils import as_utc
from coupon_wallet.models.event import Event
from coupon_wallet.services.audit_trail import ABSENT, list_events, record_event, record_event_safely, sanitize_record
from tests.fixtures_data import NOW


class Tier(Enum):
    GOLD = "gold"


def test_record_event_rejects_blank_type(db_session):
    with pytest.raises(ValidationError):
        record_event(db_session, type="   ")
    assert db_session.query(Event).count() == 0


def test_record_event_prunes_context_and_details(db_session):
    entry = record_event(
        db_session,
        type=" coupon.claimed ",
        occurred_at=NOW,
        message="  ",
        source="",
        context={"walletId": "w-1", "missing": ABSENT, "reason": None, "nested": {"empty": {}, "skipped": ABSENT}},
        details={
            "amount": Decimal("12.50"),
            "at": NOW,
            "tier": Tier.GOLD,
            "bad": float("nan"),
            "callable": print,
            "items": [1, None, ABSENT, {"x": ABSENT}, []],
            "tags": [],
        },
    )

    assert entry.type == "coupon.claimed"
    assert entry.message is None
    assert entry.source is None
    assert entry.context == {"walletId": "w-1", "reason": None}
    assert entry.details == {
        "amount": 12.5,
        "at": NOW.isoformat(),
        "tier": "gold",
        "items": [1, None],
    }


def test_empty_records_are_stored_as_null(db_session):
    entry = record_event(db_session, type="billing.webhook_ping", context={"a": ABSENT}, details={})
    assert entry.context is None
    assert entry.details is None


def test_occurred_at_falls_back_to_write_time_when_unparsable(db_session):
    before = datetime.now(timezone.utc)
    entry = record_event(db_session, type="coupon.created", occurred_at="not-a-date")
    assert as_utc(entry.occurred_at) >= before - timedelta(seconds=1)


def test_occurred_at_accepts_iso_strings(db_session):
    entry = record_event(db_session, type="coupon.created", occurred_at="2024-03-01T12:00:00Z")
    assert as_utc(entry.occurred_at) == NOW


def test_events_are_append_only(db_session):
    entry = record_event(db_session, type="coupon.created")
    entry.message = "rewritten"
    with pytest.raises(ValueError):
        db_session.commit()
    db_session.rollback()

    db_session.delete(db_session.get(Event, entry.id))
    with pytest.raises(ValueError):
        db_session.commit()
    db_session.rollback()
    assert db_session.query(Event).count() == 1


def test_storage_failure_raises_storage_error(db_session):
    with patch.object(db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
        with pytest.raises(StorageError):
            record_event(db_session, type="coupon.created")


def test_record_event_safely_swallows_failures(db_session):
    with patch.object(db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
        assert record_event_safely(db_session, type="coupon.created") is None
    assert record_event_safely(db_session, type="") is None


def test_sanitize_record_keeps_booleans_and_zero():
    assert sanitize_record({"flag": False, "count": 0, "label": ""}) == {"flag": False, "count": 0, "label": ""}
    assert sanitize_record(None) is None


def test_sanitize_record_keeps_explicit_nulls():
    assert sanitize_record({"reason": None, "paymentKey": None}) == {"reason": None, "paymentKey": None}
    assert sanitize_record({"reason": ABSENT}) is None


def test_list_events_filters_and_orders_newest_first(db_session):
    record_event(db_session, type="coupon.created")
    record_event(db_session, type="coupon.claimed")
    record_event(db_session, type="coupon.claimed")

    claimed = list_events(db_session, event_type="coupon.claimed")
    assert [entry.type for entry in claimed] == ["coupon.claimed", "coupon.claimed"]
    assert as_utc(claimed[0].created_at) >= as_utc(claimed[1].created_at)

    assert len(list_events(db_session, limit=1)) == 1
    assert len(list_events(db_session, limit=10_000)) == 3
    assert list_events(db_session, since="2999-01-01T00:00:00Z") == []
