import uuid
import warnings
from datetime import date, datetime
from pathlib import Path

import pytest
from fastapi import HTTPException

from backend.app import kitchen
from backend.app.routers import kitchen as kitchen_routes


def test_module_compiles_without_escape_warnings():
    source = Path(kitchen.__file__).read_text()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, kitchen.__file__, "exec")


def test_bump_walks_the_lifecycle():
    assert kitchen.next_status("new") == "preparing"
    assert kitchen.next_status("preparing") == "ready"
    assert kitchen.next_status("READY") == "completed"


@pytest.mark.parametrize("status", ["completed", "cancelled"])
def test_terminal_statuses_cannot_be_bumped(status):
    with pytest.raises(HTTPException) as ex:
        kitchen.next_status(status)
    assert ex.value.status_code == 409


def test_recall_only_from_ready():
    assert kitchen.recall_status("ready") == "preparing"
    with pytest.raises(HTTPException) as ex:
        kitchen.recall_status("preparing")
    assert ex.value.status_code == 409


def test_unknown_status_is_rejected():
    with pytest.raises(HTTPException) as ex:
        kitchen.normalize_status("plated")
    assert ex.value.status_code == 400


def test_can_transition():
    assert kitchen.can_transition("new", "preparing")
    assert kitchen.can_transition("ready", "preparing")
    assert kitchen.can_transition("preparing", "cancelled")
    assert not kitchen.can_transition("new", "ready")
    assert not kitchen.can_transition("completed", "cancelled")


def test_transition_stamps():
    now = datetime(2026, 5, 1, 12, 0, 0)
    assert kitchen.transition_stamps("preparing", now) == {"started_at": now}
    assert kitchen.transition_stamps("ready", now) == {"completed_at": now}
    assert kitchen.transition_stamps("cancelled", now) == {}


def _orders():
    t = datetime(2026, 5, 1, 12, 0, 0)
    return [
        {"id": 1, "status": "completed", "kitchen_status": "ready", "created_at": t.replace(minute=1)},
        {"id": 2, "status": "completed", "kitchen_status": "new", "created_at": t.replace(minute=5)},
        {"id": 3, "status": "completed", "kitchen_status": "new", "created_at": t.replace(minute=2)},
        {"id": 4, "status": "completed", "kitchen_status": "completed", "created_at": t},
        {"id": 5, "status": "voided", "kitchen_status": "new", "created_at": t},
    ]


def test_board_hides_finished_and_voided_orders_and_sorts_by_stage():
    ids = [o["id"] for o in kitchen.board(_orders())]
    assert ids == [3, 2, 1]


def test_board_filters_and_shows_completed():
    assert [o["id"] for o in kitchen.board(_orders(), status_filter="ready")] == [1]
    assert 4 in [o["id"] for o in kitchen.board(_orders(), show_completed=True)]


def test_stats_counts_every_status():
    out = kitchen.stats(_orders())
    assert out == {"new": 3, "preparing": 0, "ready": 1, "completed": 1, "cancelled": 0}


ORDER_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


class _OrderCursor:
    def __init__(self, order=None, todays=None):
        self.order = dict(order) if order else None
        self.todays = todays or []
        self.executed: list[tuple[str, tuple]] = []
        self._row = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        params = tuple(params or ())
        self.executed.append((text, params))
        if text.startswith("select id, status, kitchen_status from pos_sales"):
            self._row = self.order
            return
        if text.startswith("update pos_sales set kitchen_status"):
            to_status, started, reopened, completed = params[:4]
            self.order["kitchen_status"] = to_status
            if started is not None:
                self.order["kitchen_started_at"] = started
            if reopened:
                self.order["kitchen_completed_at"] = None
            elif completed is not None:
                self.order["kitchen_completed_at"] = completed
            self._row = dict(self.order)
            return
        if "from pos_sales" in text and "created_at >= %s" in text:
            self._rows = list(self.todays)
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


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
    monkeypatch.setattr(kitchen_routes, "get_conn", lambda: _FakeConn(cur))
    monkeypatch.setattr(kitchen_routes, "set_merchant_context", lambda *_args, **_kwargs: None)


def _order(**overrides):
    row = {
        "id": ORDER_ID,
        "status": "completed",
        "kitchen_status": "new",
        "kitchen_started_at": None,
        "kitchen_completed_at": None,
    }
    row.update(overrides)
    return row


def test_bump_moves_an_order_one_step(monkeypatch):
    cur = _OrderCursor(order=_order())
    _patch_db(monkeypatch, cur)
    out = kitchen_routes.bump_order(ORDER_ID, merchant_id="m1", _auth=None)
    assert out["order"]["kitchen_status"] == "preparing"
    assert out["order"]["kitchen_started_at"] is not None


def test_recall_puts_a_ready_order_back_and_clears_its_completion(monkeypatch):
    done = datetime(2026, 5, 1, 12, 10)
    cur = _OrderCursor(order=_order(kitchen_status="ready", kitchen_completed_at=done))
    _patch_db(monkeypatch, cur)
    out = kitchen_routes.recall_order(ORDER_ID, merchant_id="m1", _auth=None)
    assert out["order"]["kitchen_status"] == "preparing"
    assert out["order"]["kitchen_completed_at"] is None
    update = [p for t, p in cur.executed if t.startswith("update pos_sales")][0]
    assert update[2] is True


def test_bump_after_recall_stamps_completion_again(monkeypatch):
    cur = _OrderCursor(order=_order(kitchen_status="preparing", kitchen_completed_at=None))
    _patch_db(monkeypatch, cur)
    out = kitchen_routes.bump_order(ORDER_ID, merchant_id="m1", _auth=None)
    assert out["order"]["kitchen_status"] == "ready"
    assert out["order"]["kitchen_completed_at"] is not None


@pytest.mark.parametrize("move", ["bump_order", "recall_order", "cancel_order"])
@pytest.mark.parametrize("sale_status", ["voided", "refunded"])
def test_moves_refuse_orders_whose_sale_is_not_completed(monkeypatch, move, sale_status):
    cur = _OrderCursor(order=_order(status=sale_status, kitchen_status="ready"))
    _patch_db(monkeypatch, cur)
    with pytest.raises(HTTPException) as ex:
        getattr(kitchen_routes, move)(ORDER_ID, merchant_id="m1", _auth=None)
    assert ex.value.status_code == 409
    assert not any(t.startswith("update") for t, _ in cur.executed)


def test_move_on_a_missing_order_is_404(monkeypatch):
    _patch_db(monkeypatch, _OrderCursor(order=None))
    with pytest.raises(HTTPException) as ex:
        kitchen_routes.bump_order(ORDER_ID, merchant_id="m1", _auth=None)
    assert ex.value.status_code == 404


def test_cancel_from_any_open_stage(monkeypatch):
    cur = _OrderCursor(order=_order(kitchen_status="preparing"))
    _patch_db(monkeypatch, cur)
    out = kitchen_routes.cancel_order(ORDER_ID, merchant_id="m1", _auth=None)
    assert out["order"]["kitchen_status"] == "cancelled"


@pytest.mark.parametrize("finished", ["completed", "cancelled"])
def test_cancel_refuses_finished_orders(monkeypatch, finished):
    cur = _OrderCursor(order=_order(kitchen_status=finished))
    _patch_db(monkeypatch, cur)
    with pytest.raises(HTTPException) as ex:
        kitchen_routes.cancel_order(ORDER_ID, merchant_id="m1", _auth=None)
    assert ex.value.status_code == 409
    assert ex.value.detail == f"cannot cancel a {finished} order"


def test_kitchen_stats_count_only_completed_sales_for_the_day(monkeypatch):
    cur = _OrderCursor(todays=_orders())
    _patch_db(monkeypatch, cur)
    out = kitchen_routes.kitchen_stats(day=date(2026, 5, 1), merchant_id="m1", _auth=None)
    assert out["stats"] == {"new": 2, "preparing": 0, "ready": 1, "completed": 1, "cancelled": 0}
    text, params = cur.executed[0]
    assert params[0] == "m1"
    assert params[1] == datetime(2026, 5, 1)
    assert params[2] == datetime(2026, 5, 2)
