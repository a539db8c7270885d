import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from backend.app.config import settings
from backend.app.routers import staff
from backend.app.security import hash_pin


NOW = datetime(2026, 4, 2, 12, 0, tzinfo=timezone.utc)
STAFF_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


class _StaffCursor:
    def __init__(self, row):
        self.row = dict(row) if row else None
        self.updates: list[tuple[str, tuple]] = []
        self.lookup = None
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if "from merchant_staff" in text:
            self.lookup = (text, tuple(params))
            self._row = self.row
            return
        if text.startswith("update merchant_staff"):
            self.updates.append((text, tuple(params)))
            self._row = None
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._row


def _staff_row(**overrides):
    row = {
        "id": STAFF_ID,
        "staff_code": "C01",
        "name": "Dana",
        "role": "cashier",
        "permissions": None,
        "status": "active",
        "pin_hash": hash_pin("2468"),
        "failed_pin_attempts": 0,
        "locked_until": None,
    }
    row.update(overrides)
    return row


def test_failed_attempt_update_locks_at_threshold():
    assert staff.failed_attempt_update(0, NOW) == (1, None)
    attempts, until = staff.failed_attempt_update(settings.pin_max_attempts - 1, NOW)
    assert attempts == settings.pin_max_attempts
    assert until == NOW + timedelta(minutes=settings.pin_lock_minutes)


def test_is_locked_treats_naive_deadlines_as_utc():
    assert not staff.is_locked({"locked_until": None}, NOW)
    assert staff.is_locked({"locked_until": datetime(2026, 4, 2, 12, 5)}, NOW)
    assert not staff.is_locked({"locked_until": datetime(2026, 4, 2, 11, 55)}, NOW)


def test_check_pin_success_resets_counter_and_returns_session():
    cur = _StaffCursor(_staff_row(failed_pin_attempts=2))
    res = staff.check_pin(cur, "m1", staff.PinVerifyIn(staff_code=" C01 ", pin="2468"), now=NOW)

    assert res["ok"] is True
    session = res["session"]
    assert session["staff_id"] == STAFF_ID
    # Role defaults fill in when the row has no explicit permissions.
    assert session["permissions"] == staff.DEFAULT_PERMISSIONS["cashier"]
    assert session["pin_hash"].startswith("$2")
    assert "staff_code = %s" in cur.lookup[0]
    assert cur.lookup[1] == ("m1", "C01")
    assert "failed_pin_attempts = 0" in cur.updates[0][0]


def test_check_pin_wrong_pin_counts_and_eventually_locks():
    cur = _StaffCursor(_staff_row(failed_pin_attempts=0))
    res = staff.check_pin(cur, "m1", staff.PinVerifyIn(staff_id=STAFF_ID, pin="0000"), now=NOW)
    assert res == {"ok": False, "locked": False}
    assert cur.updates[0][1] == (1, None, STAFF_ID)

    cur = _StaffCursor(_staff_row(failed_pin_attempts=settings.pin_max_attempts - 1))
    res = staff.check_pin(cur, "m1", staff.PinVerifyIn(staff_id=STAFF_ID, pin="0000"), now=NOW)
    assert res == {"ok": False, "locked": True}


def test_check_pin_refuses_locked_inactive_and_unknown_staff():
    locked = _StaffCursor(_staff_row(locked_until=NOW + timedelta(minutes=1)))
    with pytest.raises(HTTPException) as ex:
        staff.check_pin(locked, "m1", staff.PinVerifyIn(staff_id=STAFF_ID, pin="2468"), now=NOW)
    assert ex.value.status_code == 423

    for row in (None, _staff_row(status="inactive"), _staff_row(pin_hash=None)):
        with pytest.raises(HTTPException) as ex:
            staff.check_pin(_StaffCursor(row), "m1", staff.PinVerifyIn(staff_id=STAFF_ID, pin="2468"), now=NOW)
        assert ex.value.status_code == 401
        assert ex.value.detail == "invalid staff or pin"


def test_check_pin_needs_an_identifier():
    with pytest.raises(HTTPException) as ex:
        staff.check_pin(_StaffCursor(None), "m1", staff.PinVerifyIn(pin="2468"), now=NOW)
    assert ex.value.status_code == 400


def test_session_payload_reads_json_permissions():
    row = _staff_row(role="manager", permissions='["view_sales"]')
    assert staff.session_payload(row, None)["permissions"] == ["view_sales"]


def test_create_staff_rejects_short_pin():
    with pytest.raises(HTTPException) as ex:
        staff.create_staff(staff.StaffIn(name="Dana", staff_code="C01", pin="12"), merchant_id="m1", _auth=True)
    assert ex.value.status_code == 400
    assert ex.value.detail == "pin must be 4 to 6 digits"
