"""
Kitchen display order lifecycle.

    new -> preparing -> ready -> completed
    new | preparing | ready -> cancelled

"Bump" advances one step, "recall" sends a ready order back to the line.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import HTTPException


STATUSES = ("new", "preparing", "ready", "completed", "cancelled")
TERMINAL = frozenset({"completed", "cancelled"})
STATUS_RANK = {s: i for i, s in enumerate(STATUSES)}

_BUMP = {"new": "preparing", "preparing": "ready", "ready": "completed"}
_RECALL = {"ready": "preparing"}


def normalize_status(raw: Optional[str]) -> str:
    s = (raw or "new").strip().lower()
    if s not in STATUS_RANK:
        raise HTTPException(status_code=400, detail=f"invalid kitchen status: {raw}")
    return s


def next_status(status: str) -> str:
    s = normalize_status(status)
    if s not in _BUMP:
        raise HTTPException(status_code=409, detail=f"cannot bump a {s} order")
    return _BUMP[s]


def recall_status(status: str) -> str:
    s = normalize_status(status)
    if s not in _RECALL:
        raise HTTPException(status_code=409, detail="only ready orders can be recalled")
    return _RECALL[s]


def can_transition(from_status: str, to_status: str) -> bool:
    a = normalize_status(from_status)
    b = normalize_status(to_status)
    if a in TERMINAL:
        return False
    if b == "cancelled":
        return True
    return _BUMP.get(a) == b or _RECALL.get(a) == b


def transition_stamps(to_status: str, now: datetime) -> dict:
    if to_status == "preparing":
        return {"started_at": now}
    if to_status in {"ready", "completed"}:
        return {"completed_at": now}
    return {}


def sort_key(order: dict):
    return (STATUS_RANK.get(order.get("kitchen_status") or "new", 0), order.get("created_at") or datetime.min)


def board(orders: list[dict], status_filter: Optional[str] = None, show_completed: bool = False) -> list[dict]:
    rows = [o for o in orders or [] if (o.get("status") or "completed") == "completed"]
    if status_filter and status_filter != "all":
        want = normalize_status(status_filter)
        rows = [o for o in rows if (o.get("kitchen_status") or "new") == want]
    elif not show_completed:
        rows = [o for o in rows if (o.get("kitchen_status") or "new") not in TERMINAL]
    return sorted(rows, key=sort_key)


def stats(orders: list[dict]) -> dict:
    out = {s: 0 for s in STATUSES}
    for o in orders or []:
        out[o.get("kitchen_status") or "new"] = out.get(o.get("kitchen_status") or "new", 0) + 1
    return out
