import re
import uuid
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import cash_sessions as cs


SESSION_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")


def _statuses(sql_text):
    m = re.search(r"status in \(([^)]*)\)", sql_text)
    if m:
        return {s.strip(" '") for s in m.group(1).split(",")}
    m = re.search(r"status = '(\w+)'", sql_text)
    return {m.group(1)} if m else set()


class _FakeCursor:
    def __init__(self, session=None, cash=0, split_cash=0, refunds=0, existing_today=None, sales=None):
        self.session = dict(session) if session else None
        # When given, sale rows are filtered by the statuses the query asks for.
        self.sales = sales
        self.cash = Decimal(str(cash))
        self.split_cash = Decimal(str(split_cash))
        self.refunds = Decimal(str(refunds))
        self.existing_today = existing_today
        self.executed: list[tuple[str, tuple]] = []
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, tuple(params or ())))
        if text.startswith("select") and "from pos_cash_sessions" in text and "and id = %s" in text:
            self._row = self.session
            return
        if "select id, status from pos_cash_sessions" in text:
            self._row = self.existing_today
            return
        if "from pos_sales s cross join lateral" in text:
            self._row = {"total": self._sum_sales(text, "split") if self.sales is not None else self.split_cash}
            return
        if "from pos_sales" in text:
            self._row = {"total": self._sum_sales(text, "cash") if self.sales is not None else self.cash}
            return
        if "from pos_refunds" in text:
            self._row = {"total": self.refunds}
            return
        if text.startswith("insert into pos_cash_movements"):
            self._row = None
            return
        if text.startswith("insert into pos_cash_sessions"):
            self._row = {"id": "new", "status": "open", "opening_balance": params[2]}
            return
        if text.startswith("update pos_cash_sessions"):
            # Echo the parameters back so tests can inspect what was written.
            self._row = {"params": tuple(params)}
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def _sum_sales(self, text, method):
        statuses = _statuses(text)
        total = Decimal("0")
        for s in self.sales:
            if s["payment_method"] != method or s["status"] not in statuses:
                continue
            if method == "split":
                total += sum((p["amount"] for p in s["payments"] if p["method"] == "cash"), Decimal("0"))
            else:
                total += s["total_amount"]
        return total

    def fetchone(self):
        return self._row


class _FakeConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur


def _patch_db(monkeypatch, cur):
    monkeypatch.setattr(cs, "get_conn", lambda: _FakeConn(cur))
    monkeypatch.setattr(cs, "set_merchant_context", lambda *_args, **_kwargs: None)


def _open_session(**overrides):
    row = {
        "id": SESSION_ID,
        "session_date": date(2026, 4, 2),
        "opening_balance": Decimal("100.00"),
        "cash_in": Decimal("20.00"),
        "cash_out": Decimal("5.00"),
        "cash_sales_total": Decimal("0"),
        "expected_balance": None,
        "status": "open",
        "notes": None,
    }
    row.update(overrides)
    return row


def test_expected_balance_formula():
    assert cs.expected_balance("100", "250.50", "20", "5.25") == Decimal("365.25")
    assert cs.expected_balance(None, None, None, None) == Decimal("0.00")


def test_cash_sales_total_adds_split_cash_and_subtracts_cash_refunds():
    cur = _FakeCursor(cash="300", split_cash="40", refunds="15.5")
    assert cs._cash_sales_total(cur, "m1", date(2026, 4, 2)) == Decimal("324.50")
    assert len(cur.executed) == 3


def test_close_session_records_expected_and_difference(monkeypatch):
    cur = _FakeCursor(session=_open_session(), cash="200", split_cash="10", refunds="0")
    _patch_db(monkeypatch, cur)

    res = cs.close_session(
        SESSION_ID,
        cs.SessionCloseIn(closing_balance=Decimal("320"), notes="counted twice"),
        merchant_id="m1",
        _auth=True,
        user={"user_id": "u1"},
    )

    closing, cash_sales, expected, difference, closed_by, notes, sid = res["session"]["params"]
    assert closing == Decimal("320.00")
    assert cash_sales == Decimal("210.00")
    # 100 + 210 + 20 - 5
    assert expected == Decimal("325.00")
    assert difference == Decimal("-5.00")
    assert closed_by == "u1"
    assert notes == "counted twice"
    assert sid == str(SESSION_ID)


def test_close_session_rejects_already_closed(monkeypatch):
    cur = _FakeCursor(session=_open_session(status="closed"))
    _patch_db(monkeypatch, cur)
    with pytest.raises(HTTPException) as ex:
        cs.close_session(SESSION_ID, cs.SessionCloseIn(closing_balance=Decimal("1")), merchant_id="m1", _auth=True, user={"user_id": "u1"})
    assert ex.value.status_code == 409


def test_close_session_rejects_negative_closing_balance():
    with pytest.raises(HTTPException) as ex:
        cs.close_session(SESSION_ID, cs.SessionCloseIn(closing_balance=Decimal("-1")), merchant_id="m1", _auth=True, user={"user_id": "u1"})
    assert ex.value.status_code == 400
    assert ex.value.detail == "closing balance must be >= 0"


def test_open_session_refuses_second_session_for_the_day(monkeypatch):
    cur = _FakeCursor(existing_today={"id": "s0", "status": "closed"})
    _patch_db(monkeypatch, cur)
    with pytest.raises(HTTPException) as ex:
        cs.open_session(cs.SessionOpenIn(opening_balance=Decimal("50")), merchant_id="m1", _auth=True, user={"user_id": "u1"})
    assert ex.value.status_code == 409


def test_cash_movement_updates_bucket_and_appends_note(monkeypatch):
    cur = _FakeCursor(session=_open_session(notes="float checked"))
    _patch_db(monkeypatch, cur)

    res = cs.add_cash_movement(
        SESSION_ID,
        cs.CashMovementIn(direction="OUT", amount=Decimal("12.5"), reason="milk"),
        merchant_id="m1",
        _auth=True,
        user={"user_id": "u1"},
    )

    update_sql = [s for s, _ in cur.executed if s.startswith("update pos_cash_sessions")][0]
    assert "set cash_out = cash_out + %s" in update_sql
    amount, notes, _sid = res["session"]["params"]
    assert amount == Decimal("12.50")
    assert notes == "float checked\n[OUT] 12.50: milk"


def test_cash_movement_rejects_non_positive_amount_and_closed_session(monkeypatch):
    with pytest.raises(HTTPException) as ex:
        cs.add_cash_movement(SESSION_ID, cs.CashMovementIn(direction="in", amount=Decimal("0")), merchant_id="m1", _auth=True, user={"user_id": "u1"})
    assert ex.value.status_code == 400

    _patch_db(monkeypatch, _FakeCursor(session=_open_session(status="closed")))
    with pytest.raises(HTTPException) as ex:
        cs.add_cash_movement(SESSION_ID, cs.CashMovementIn(direction="in", amount=Decimal("5")), merchant_id="m1", _auth=True, user={"user_id": "u1"})
    assert ex.value.status_code == 409


def test_close_session_counts_a_fully_refunded_cash_sale_once(monkeypatch):
    # Float 100, a 50.00 cash sale refunded in full from the drawer: 100 is left.
    cur = _FakeCursor(
        session=_open_session(cash_in=Decimal("0"), cash_out=Decimal("0")),
        sales=[{"payment_method": "cash", "status": "refunded", "total_amount": Decimal("50.00")}],
        refunds="50.00",
    )
    _patch_db(monkeypatch, cur)

    res = cs.close_session(
        SESSION_ID,
        cs.SessionCloseIn(closing_balance=Decimal("100")),
        merchant_id="m1",
        _auth=True,
        user={"user_id": "u1"},
    )

    _closing, cash_sales, expected, difference, *_rest = res["session"]["params"]
    assert cash_sales == Decimal("0.00")
    assert expected == Decimal("100.00")
    assert difference == Decimal("0.00")


def test_cash_sales_total_keeps_refunded_split_legs_and_skips_voided_sales():
    cur = _FakeCursor(
        sales=[
            {"payment_method": "cash", "status": "completed", "total_amount": Decimal("30.00")},
            {"payment_method": "cash", "status": "voided", "total_amount": Decimal("99.00")},
            {
                "payment_method": "split",
                "status": "refunded",
                "payments": [{"method": "cash", "amount": Decimal("20.00")}, {"method": "card", "amount": Decimal("5.00")}],
            },
        ],
        refunds="20.00",
    )
    assert cs._cash_sales_total(cur, "m1", date(2026, 4, 2)) == Decimal("30.00")


def test_update_opening_balance_only_while_open(monkeypatch):
    cur = _FakeCursor(session=_open_session())
    _patch_db(monkeypatch, cur)
    res = cs.update_opening_balance(SESSION_ID, cs.OpeningBalanceIn(opening_balance=Decimal("80.5")), merchant_id="m1", _auth=True)
    assert res["session"]["params"] == (Decimal("80.50"), str(SESSION_ID))

    _patch_db(monkeypatch, _FakeCursor(session=_open_session(status="closed")))
    with pytest.raises(HTTPException) as ex:
        cs.update_opening_balance(SESSION_ID, cs.OpeningBalanceIn(opening_balance=Decimal("80")), merchant_id="m1", _auth=True)
    assert ex.value.status_code == 409

    with pytest.raises(HTTPException) as ex:
        cs.update_opening_balance(SESSION_ID, cs.OpeningBalanceIn(opening_balance=Decimal("-1")), merchant_id="m1", _auth=True)
    assert ex.value.status_code == 400


def test_drawer_balance_live_for_open_and_stored_for_closed(monkeypatch):
    cur = _FakeCursor(session=_open_session(), cash="40", split_cash="10", refunds="5")
    _patch_db(monkeypatch, cur)
    res = cs.drawer_balance(SESSION_ID, merchant_id="m1", _auth=True)
    assert res["status"] == "open"
    assert res["cash_sales_total"] == Decimal("45.00")
    # 100 + 45 + 20 - 5
    assert res["expected_balance"] == Decimal("160.00")

    closed = _open_session(status="closed", cash_sales_total=Decimal("12.00"), expected_balance=Decimal("127.00"))
    cur = _FakeCursor(session=closed, cash="999")
    _patch_db(monkeypatch, cur)
    res = cs.drawer_balance(SESSION_ID, merchant_id="m1", _auth=True)
    assert res == {"session_id": SESSION_ID, "status": "closed", "cash_sales_total": Decimal("12.00"), "expected_balance": Decimal("127.00")}
    assert not any("from pos_sales" in sql for sql, _ in cur.executed)


def test_missing_session_is_404(monkeypatch):
    _patch_db(monkeypatch, _FakeCursor(session=None))
    with pytest.raises(HTTPException) as ex:
        cs.drawer_balance(SESSION_ID, merchant_id="m1", _auth=True)
    assert ex.value.status_code == 404
