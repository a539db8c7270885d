from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.workers import pos_processor as proc


class _RefCursor:
    def __init__(self, refs=None, points_balance=None):
        self.refs = dict(refs or {})
        self.points_balance = points_balance
        self.executed: list[tuple[str, tuple]] = []
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        params = tuple(params or ())
        self.executed.append((text, params))
        if "from pos_offline_refs" in text:
            server_id = self.refs.get((params[1], params[2]))
            self._row = {"server_id": server_id} if server_id else None
            return
        if "from pos_loyalty_points" in text:
            self._row = None if self.points_balance is None else {"points_balance": self.points_balance}
            return
        self._row = None

    def fetchone(self):
        return self._row


def test_next_retry_at_for_attempt_backs_off_and_caps():
    now = datetime.now(timezone.utc)
    first = proc.next_retry_at_for_attempt(1) - now
    fourth = proc.next_retry_at_for_attempt(4) - now
    capped = proc.next_retry_at_for_attempt(30, "ev-1") - now
    assert timedelta(seconds=0) < first <= timedelta(seconds=2)
    assert timedelta(seconds=7) < fourth <= timedelta(seconds=9)
    assert capped <= timedelta(seconds=301)


def test_next_retry_jitter_is_stable_per_event():
    a = proc.next_retry_at_for_attempt(6, "ev-1")
    b = proc.next_retry_at_for_attempt(6, "ev-1")
    assert abs((a - b).total_seconds()) < 1


def test_parse_event_time():
    assert proc.parse_event_time(None) is None
    assert proc.parse_event_time("") is None
    assert proc.parse_event_time("2026-04-02T08:00:00Z") == datetime(2026, 4, 2, 8, 0, tzinfo=timezone.utc)
    assert proc.parse_event_time("2026-04-02T08:00:00").tzinfo == timezone.utc
    with pytest.raises(ValueError):
        proc.parse_event_time("yesterday")


def test_resolve_ref_passes_server_ids_through_and_maps_offline_ids():
    cur = _RefCursor(refs={("customer", "offline_17"): "c-9"})
    assert proc.resolve_ref(cur, "m1", "customer", None) is None
    assert proc.resolve_ref(cur, "m1", "customer", "c-1") == "c-1"
    assert cur.executed == []
    assert proc.resolve_ref(cur, "m1", "customer", "offline_17") == "c-9"
    with pytest.raises(ValueError) as ex:
        proc.resolve_ref(cur, "m1", "staff", "offline_17")
    assert str(ex.value) == "unresolved offline staff offline_17"


def test_process_sale_resolves_customer_and_tags_notes(monkeypatch):
    seen = {}

    def fake_post_sale(cur, merchant_id, data, **kwargs):
        seen["data"] = data
        seen["kwargs"] = kwargs
        return {"duplicate": False}

    monkeypatch.setattr(proc, "post_sale", fake_post_sale)
    cur = _RefCursor(refs={("customer", "offline_5"): "c-5"})
    outcome = proc.process_sale(
        cur,
        "m1",
        "ev-1",
        {
            "items": [{"product_id": "p1", "quantity": 1}],
            "customer_id": "offline_5",
            "offline_id": "abc",
            "offline_sale_number": "OFF-1700",
            "notes": "window seat",
            "created_at": "2026-04-01T19:45:00Z",
        },
        "t1",
    )
    assert outcome == "processed"
    data = seen["data"]
    assert data["customer_id"] == "c-5"
    assert data["notes"] == "[Offline Sale] OFF-1700 - window seat"
    assert data["created_at"] == datetime(2026, 4, 1, 19, 45, tzinfo=timezone.utc)
    assert seen["kwargs"]["terminal_id"] == "t1"


def test_process_sale_without_offline_id_keys_on_event(monkeypatch):
    seen = {}
    monkeypatch.setattr(proc, "post_sale", lambda cur, mid, data, **kw: seen.update(data=data) or {"duplicate": True})
    outcome = proc.process_sale(_RefCursor(), "m1", "ev-7", {"items": []}, "t1")
    assert outcome == "duplicate"
    assert seen["data"]["offline_id"] == "event_ev-7"
    assert seen["data"]["notes"] == "[Offline Sale] event_ev-7"
    assert "created_at" not in seen["data"]


def test_process_sale_ignores_a_created_at_in_the_future(monkeypatch):
    seen = {}

    def fake_post_sale(cur, merchant_id, data, **kwargs):
        seen["data"] = data
        seen["kwargs"] = kwargs
        return {"duplicate": False}

    monkeypatch.setattr(proc, "post_sale", fake_post_sale)
    ahead = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
    proc.process_sale(_RefCursor(), "m1", "ev-9", {"items": [], "created_at": ahead}, "t1")
    assert "created_at" not in seen["data"]
    assert seen["kwargs"]["now"] is None


def test_inventory_adjusted_refuses_negative_stock(monkeypatch):
    monkeypatch.setattr(
        proc,
        "lock_products",
        lambda cur, mid, ids: {"p1": {"id": "p1", "track_inventory": True, "stock_quantity": Decimal("2")}},
    )
    with pytest.raises(ValueError) as ex:
        proc.process_inventory_adjusted(_RefCursor(), "m1", "ev-1", {"product_id": "p1", "type": "damage", "quantity": 3})
    assert str(ex.value) == "stock cannot go below zero"


def test_inventory_adjusted_restock_moves_stock(monkeypatch):
    product = {"id": "p1", "track_inventory": True, "stock_quantity": Decimal("2")}
    calls = []
    monkeypatch.setattr(proc, "lock_products", lambda cur, mid, ids: {"p1": product})
    monkeypatch.setattr(proc, "apply_stock_change", lambda *args, **kwargs: calls.append((args, kwargs)))
    assert proc.process_inventory_adjusted(_RefCursor(), "m1", "ev-1", {"product_id": "p1", "type": "restock", "quantity": "5"}) == "processed"
    args, kwargs = calls[0]
    assert args[3] == Decimal("5")
    assert args[4] == "restock"
    assert kwargs["absolute"] == Decimal("7")
    assert kwargs["reference_id"] == "ev-1"


def test_loyalty_redeem_needs_enough_points():
    cur = _RefCursor(points_balance=10)
    with pytest.raises(ValueError) as ex:
        proc.process_loyalty_redeemed(cur, "m1", {"customer_id": "c1", "points": 11})
    assert str(ex.value) == "insufficient points"
    with pytest.raises(ValueError):
        proc.process_loyalty_redeemed(cur, "m1", {"customer_id": "c1", "points": 0})
    assert proc.process_loyalty_redeemed(cur, "m1", {"customer_id": "c1", "points": 10}) == "processed"


def test_staff_events_only_accept_bcrypt_pin_hashes():
    with pytest.raises(ValueError):
        proc._pin_hash({"pin_hash": "1234"})
    assert proc._pin_hash({"pin_hash": "$2b$12$abc"}) == "$2b$12$abc"
    assert proc._pin_hash({}) is None


def test_apply_event_rejects_unknown_types():
    with pytest.raises(ValueError):
        proc.apply_event(
            _RefCursor(),
            "m1",
            {"id": "e1", "terminal_id": "t1", "event_type": "sale.exploded", "payload_json": "{}", "created_at": None},
        )


class _OutboxCursor:
    def __init__(self, event):
        self.event = event
        self.updates: list[tuple] = []
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if "from pos_events_outbox o" in text:
            self._row = self.event
        elif text.startswith("update pos_events_outbox"):
            self.updates.append((text, tuple(params)))
            self._row = None
        else:
            self._row = None

    def fetchone(self):
        return self._row


class _OutboxConn:
    def __init__(self, cur):
        self._cur = cur

    @contextmanager
    def transaction(self):
        yield

    def cursor(self):
        return self._cur


def _event(attempts=0):
    return {
        "id": "e1",
        "terminal_id": "t1",
        "event_type": "customer.created",
        "payload_json": {"id": "offline_1", "name": "Ana"},
        "created_at": datetime(2026, 4, 2, tzinfo=timezone.utc),
        "attempt_count": attempts,
    }


def test_process_one_marks_event_processed(monkeypatch):
    cur = _OutboxCursor(_event())
    monkeypatch.setattr(proc, "apply_event", lambda cur, mid, e: "processed")
    assert proc._process_one(_OutboxConn(cur), "m1", 5) is True
    sql, params = cur.updates[-1]
    assert "set status = 'processed'" in sql
    assert params == ("e1",)


def test_process_one_records_failure_then_dead_letters(monkeypatch):
    def boom(cur, mid, e):
        raise ValueError("unresolved offline customer offline_9")

    monkeypatch.setattr(proc, "apply_event", boom)
    cur = _OutboxCursor(_event(attempts=1))
    proc._process_one(_OutboxConn(cur), "m1", 5)
    status, attempts, message, next_at, event_id = cur.updates[-1][1]
    assert (status, attempts, event_id) == ("failed", 2, "e1")
    assert message == "unresolved offline customer offline_9"
    assert next_at is not None

    cur = _OutboxCursor(_event(attempts=4))
    proc._process_one(_OutboxConn(cur), "m1", 5)
    status, attempts, _message, next_at, _event_id = cur.updates[-1][1]
    assert (status, attempts, next_at) == ("dead", 5, None)


def test_process_one_returns_false_when_queue_is_empty():
    assert proc._process_one(_OutboxConn(_OutboxCursor(None)), "m1", 5) is False
