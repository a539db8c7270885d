from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
import uuid
import json

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission, require_terminal

router = APIRouter(prefix="/pos/outbox", tags=["outbox"])

EVENT_TYPES = {
    "sale.created",
    "loyalty.points_added",
    "loyalty.points_redeemed",
    "inventory.adjusted",
    "customer.created",
    "customer.updated",
    "staff.created",
    "staff.updated",
    "staff.deleted",
    "cash.movement",
}
STATUSES = {"pending", "processed", "failed", "dead"}


class TerminalEvent(BaseModel):
    event_id: uuid.UUID
    event_type: str
    payload: dict
    created_at: datetime


class OutboxSubmit(BaseModel):
    terminal_id: uuid.UUID
    events: List[TerminalEvent]


@router.post("/submit")
def submit_outbox(data: OutboxSubmit, terminal=Depends(require_terminal)):
    if data.terminal_id != terminal["terminal_id"]:
        raise HTTPException(status_code=400, detail="terminal_id mismatch")
    accepted: list[str] = []
    duplicates: list[str] = []
    rejected: list[dict] = []
    if not data.events:
        return {"accepted": accepted, "duplicates": duplicates, "rejected": rejected}

    with get_conn() as conn:
        set_merchant_context(conn, str(terminal["merchant_id"]))
        with conn.cursor() as cur:
            for e in data.events:
                if e.event_type not in EVENT_TYPES:
                    rejected.append({"event_id": str(e.event_id), "error": f"unsupported event type {e.event_type}"})
                    continue
                cur.execute(
                    """
                    INSERT INTO pos_events_outbox
                      (id, terminal_id, event_type, payload_json, created_at, status, next_attempt_at)
                    VALUES
                      (%s, %s, %s, %s::jsonb, %s, 'pending', %s)
                    ON CONFLICT (id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        e.event_id,
                        data.terminal_id,
                        e.event_type,
                        json.dumps(e.payload, default=str),
                        e.created_at,
                        e.created_at,
                    ),
                )
                if cur.fetchone():
                    accepted.append(str(e.event_id))
                else:
                    duplicates.append(str(e.event_id))
    return {"accepted": accepted, "duplicates": duplicates, "rejected": rejected}


@router.get("/terminal")
def list_terminal_outbox(status: Optional[str] = None, limit: int = 100, terminal=Depends(require_terminal)):
    if status and status not in STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    sql = """
        SELECT id, event_type, created_at, status, attempt_count, error_message, processed_at
        FROM pos_events_outbox
        WHERE terminal_id = %s
    """
    params: list = [terminal["terminal_id"]]
    if status:
        sql += " AND status = %s"
        params.append(status)
    sql += " ORDER BY created_at DESC LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        set_merchant_context(conn, str(terminal["merchant_id"]))
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"events": cur.fetchall()}


@router.get("", dependencies=[Depends(require_permission("pos:manage"))])
def list_outbox_events(
    status: Optional[str] = None,
    terminal_id: Optional[uuid.UUID] = None,
    limit: int = 200,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if status and status not in STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")

    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            sql = """
                SELECT o.id, o.terminal_id, t.terminal_code, o.event_type, o.created_at,
                       o.status, o.attempt_count, o.error_message, o.next_attempt_at, o.processed_at
                FROM pos_events_outbox o
                JOIN pos_terminals t ON t.id = o.terminal_id
                WHERE t.merchant_id = %s
            """
            params: list = [merchant_id]
            if status:
                sql += " AND o.status = %s"
                params.append(status)
            if terminal_id:
                sql += " AND o.terminal_id = %s"
                params.append(terminal_id)
            sql += " ORDER BY o.created_at DESC LIMIT %s"
            params.append(limit)
            cur.execute(sql, params)
            return {"events": cur.fetchall()}


@router.get("/summary", dependencies=[Depends(require_permission("pos:manage"))])
def outbox_summary(merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT o.status, COUNT(*)::int AS count
                FROM pos_events_outbox o
                JOIN pos_terminals t ON t.id = o.terminal_id
                WHERE t.merchant_id = %s
                GROUP BY o.status
                """,
                (merchant_id,),
            )
            by_status = {r["status"]: r["count"] for r in cur.fetchall() or []}
            cur.execute(
                """
                SELECT MIN(o.created_at) AS oldest_pending_at
                FROM pos_events_outbox o
                JOIN pos_terminals t ON t.id = o.terminal_id
                WHERE t.merchant_id = %s AND o.status IN ('pending', 'failed')
                """,
                (merchant_id,),
            )
            oldest = (cur.fetchone() or {}).get("oldest_pending_at")
    return {
        "by_status": {s: by_status.get(s, 0) for s in sorted(STATUSES)},
        "total": sum(by_status.values()),
        "oldest_pending_at": oldest,
    }


@router.post("/{event_id}/requeue", dependencies=[Depends(require_permission("pos:manage"))])
def requeue_outbox_event(
    event_id: uuid.UUID,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_events_outbox o
                SET status = 'pending',
                    attempt_count = 0,
                    error_message = NULL,
                    processed_at = NULL,
                    next_attempt_at = now()
                FROM pos_terminals t
                WHERE o.id = %s
                  AND t.id = o.terminal_id
                  AND t.merchant_id = %s
                  AND o.status IN ('failed', 'dead')
                RETURNING o.id, o.status
                """,
                (str(event_id), merchant_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="event not found or not requeueable")
            return {"event": row}
