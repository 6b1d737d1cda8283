"""Tests for session freshness checks."""

from datetime import timedelta

from prebooker.models import DeviceSession
from prebooker.sessions import needs_refresh, token_age

from conftest import DEVICE_FP, NOW, USER


def _session(updated_minutes_ago=None, **overrides) -> DeviceSession:
    data = {"user_email": USER, "fingerprint": DEVICE_FP, "token": "t"}
    if updated_minutes_ago is not None:
        data["last_token_update_date"] = NOW - timedelta(minutes=updated_minutes_ago)
    data.update(overrides)
    return DeviceSession(**data)


class TestNeedsRefresh:
    def test_fresh(self):
        assert not needs_refresh(_session(24), NOW)

    def test_exactly_at_threshold(self):
        assert not needs_refresh(_session(25), NOW)

    def test_stale(self):
        assert needs_refresh(_session(26), NOW)

    def test_never_updated(self):
        assert needs_refresh(_session(), NOW)

    def test_custom_threshold(self):
        assert needs_refresh(_session(11), NOW, threshold_minutes=10)

    def test_naive_update_date_treated_as_utc(self):
        naive = (NOW - timedelta(minutes=30)).replace(tzinfo=None)
        session = _session(last_token_update_date=naive)

        assert token_age(session, NOW) == timedelta(minutes=30)
        assert needs_refresh(session, NOW)

