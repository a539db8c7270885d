import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from backend.app import deps
from backend.app.routers import terminals
from backend.app.security import hash_device_token


TERMINAL_ID = uuid.UUID("44444444-4444-4444-4444-444444444444")
PRODUCT_ID = uuid.UUID("55555555-5555-5555-5555-555555555555")
TERMINAL = {"terminal_id": TERMINAL_ID, "merchant_id": "m1"}


class _FakeCursor:
    def __init__(self, row=None):
        self.row = row
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(str(sql or "").lower().split()), tuple(params or ())))

    def fetchone(self):
        return self.row


class _FakeConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur


def _capture_post_sale(monkeypatch):
    seen = {}

    def fake_post_sale(cur, merchant_id, payload, **kwargs):
        seen["merchant_id"] = merchant_id
        seen["payload"] = payload
        seen["kwargs"] = kwargs
        return {"sale": {"id": "s1"}, "duplicate": False}

    monkeypatch.setattr(terminals, "get_conn", lambda: _FakeConn(_FakeCursor()))
    monkeypatch.setattr(terminals, "set_merchant_context", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(terminals, "post_sale", fake_post_sale)
    return seen


def _sale(**extra):
    return terminals.TerminalSaleIn(items=[{"product_id": PRODUCT_ID, "quantity": "1"}], offline_id="abc", **extra)


def test_terminal_sale_keeps_offline_sale_time(monkeypatch):
    seen = _capture_post_sale(monkeypatch)
    terminals.terminal_create_sale(_sale(created_at=datetime(2026, 4, 1, 18, 0)), terminal=TERMINAL)

    payload = seen["payload"]
    assert payload["created_at"] == datetime(2026, 4, 1, 18, 0, tzinfo=timezone.utc)
    assert payload["offline_id"] == "abc"
    assert payload["items"][0]["product_id"] == PRODUCT_ID
    assert seen["merchant_id"] == "m1"
    assert seen["kwargs"]["terminal_id"] == TERMINAL_ID


def test_terminal_sale_ignores_future_timestamps(monkeypatch):
    seen = _capture_post_sale(monkeypatch)
    future = datetime.now(timezone.utc) + timedelta(hours=3)
    terminals.terminal_create_sale(_sale(created_at=future), terminal=TERMINAL)
    assert "created_at" not in seen["payload"]


def test_terminal_sale_split_needs_payments():
    with pytest.raises(HTTPException) as ex:
        terminals.terminal_create_sale(_sale(payment_method="split"), terminal=TERMINAL)
    assert ex.value.status_code == 400


def test_merged_settings_ignores_unknown_keys_and_nulls():
    out = terminals.merged_settings('{"max_offline_sales": 20, "auto_logout_minutes": null, "theme": "dark"}')
    assert out["max_offline_sales"] == 20
    assert out["auto_logout_minutes"] == 15
    assert "theme" not in out


def test_recent_sales_limit_bounds():
    with pytest.raises(HTTPException) as ex:
        terminals.terminal_recent_sales(limit=501, terminal=TERMINAL)
    assert ex.value.detail == "limit must be between 1 and 500"


def test_heartbeat_clamps_pending_count(monkeypatch):
    cur = _FakeCursor(row={"last_sync_at": "now"})
    monkeypatch.setattr(terminals, "get_conn", lambda: _FakeConn(cur))
    monkeypatch.setattr(terminals, "set_merchant_context", lambda *_args, **_kwargs: None)
    res = terminals.terminal_heartbeat(terminals.HeartbeatIn(pending_sync_count=-4), terminal=TERMINAL)
    assert res == {"ok": True, "last_sync_at": "now"}
    assert cur.executed[0][1] == (0, TERMINAL_ID)


def test_terminal_verify_pin_maps_lockout_to_423(monkeypatch):
    monkeypatch.setattr(terminals, "get_conn", lambda: _FakeConn(_FakeCursor()))
    monkeypatch.setattr(terminals, "set_merchant_context", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(terminals, "check_pin", lambda cur, mid, data: {"ok": False, "locked": True})
    with pytest.raises(HTTPException) as ex:
        terminals.terminal_verify_pin(terminals.PinVerifyIn(staff_code="C01", pin="1111"), terminal=TERMINAL)
    assert ex.value.status_code == 423


def test_require_terminal_checks_token_and_registration(monkeypatch):
    row = {"merchant_id": "m1", "token_hash": hash_device_token("tok"), "is_registered": True}
    monkeypatch.setattr(deps, "get_admin_conn", lambda: _FakeConn(_FakeCursor(row=row)))
    assert deps.require_terminal(terminal_id=TERMINAL_ID, terminal_token="tok") == TERMINAL

    with pytest.raises(HTTPException) as ex:
        deps.require_terminal(terminal_id=TERMINAL_ID, terminal_token="nope")
    assert ex.value.status_code == 401

    row["is_registered"] = False
    with pytest.raises(HTTPException):
        deps.require_terminal(terminal_id=TERMINAL_ID, terminal_token="tok")
