#!/usr/bin/env python3
"""
Apply events that terminals queued while offline.

Each event runs inside its own savepoint. A failure is recorded on the event
and retried with exponential back-off until `max_attempts`, after which the
event is parked as `dead` for an operator to requeue.
"""
import argparse
import hashlib
import json
import sys
import time
from datetime import datetime, date, timedelta, timezone
from decimal import Decimal
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from backend.app.config import settings
from backend.app.posting import (
    add_loyalty_points,
    apply_stock_change,
    lock_products,
    post_sale,
    stock_target,
)
from backend.app.pricing import q2, to_decimal

DB_URL_DEFAULT = settings.db_url
MAX_ATTEMPTS_DEFAULT = 5
OFFLINE_PREFIX = "offline_"


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def get_conn(db_url):
    return psycopg.connect(db_url, row_factory=dict_row)


def set_merchant_context(cur, merchant_id: str):
    cur.execute("SELECT set_config('app.current_merchant_id', %s::text, true)", (merchant_id,))


def next_retry_at_for_attempt(attempt_count: int, event_id: Optional[str] = None) -> datetime:
    delay_seconds = min(300, 2 ** max(attempt_count - 1, 0))
    if event_id:
        # Deterministic per-event jitter so a batch of failures doesn't retry in lockstep.
        digest = hashlib.sha1(f"{event_id}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(300, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)


def parse_event_time(raw) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        ts = raw
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"invalid timestamp {raw!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def error_text(ex: Exception) -> str:
    # Shared posting helpers raise HTTPException; keep its detail, not the repr.
    return str(getattr(ex, "detail", None) or ex)


def resolve_ref(cur, merchant_id: str, kind: str, value) -> Optional[str]:
    """Map an `offline_<ms>` id to the server id minted when its create event was applied."""
    if value is None or value == "":
        return None
    value = str(value)
    if not value.startswith(OFFLINE_PREFIX):
        return value
    cur.execute(
        """
        SELECT server_id
        FROM pos_offline_refs
        WHERE merchant_id = %s AND kind = %s AND offline_id = %s
        """,
        (merchant_id, kind, value),
    )
    row = cur.fetchone()
    if not row:
        raise ValueError(f"unresolved offline {kind} {value}")
    return str(row["server_id"])


def _remember_ref(cur, merchant_id: str, kind: str, offline_id: str, server_id, terminal_id):
    cur.execute(
        """
        INSERT INTO pos_offline_refs (merchant_id, kind, offline_id, server_id, terminal_id)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (merchant_id, kind, offline_id) DO NOTHING
        """,
        (merchant_id, kind, offline_id, server_id, terminal_id),
    )


def _known_ref(cur, merchant_id: str, kind: str, offline_id: Optional[str]) -> Optional[str]:
    if not offline_id or not str(offline_id).startswith(OFFLINE_PREFIX):
        return None
    try:
        return resolve_ref(cur, merchant_id, kind, offline_id)
    except ValueError:
        return None


def process_sale(cur, merchant_id: str, event_id: str, payload: dict, terminal_id: str):
    data = dict(payload)
    data["customer_id"] = resolve_ref(cur, merchant_id, "customer", data.get("customer_id"))
    created_at = parse_event_time(data.get("created_at"))
    # A skewed device clock must not date sales in the future.
    if created_at and created_at > datetime.now(timezone.utc):
        created_at = None
    if created_at:
        data["created_at"] = created_at
    else:
        data.pop("created_at", None)
    # Replays of the same event must hit the offline_id idempotency check.
    data["offline_id"] = data.get("offline_id") or f"event_{event_id}"
    label = data.get("offline_sale_number") or data["offline_id"]
    note = (data.get("notes") or "").strip()
    data["notes"] = f"[Offline Sale] {label}" + (f" - {note}" if note else "")

    result = post_sale(
        cur,
        merchant_id,
        data,
        terminal_id=terminal_id,
        default_tax_rate=settings.default_tax_rate,
        now=created_at,
    )
    return "duplicate" if result["duplicate"] else "processed"


def _points(payload: dict) -> int:
    try:
        points = int(payload.get("points") or 0)
    except (TypeError, ValueError):
        raise ValueError("points must be an integer")
    if points <= 0:
        raise ValueError("points must be > 0")
    return points


def process_loyalty_added(cur, merchant_id: str, payload: dict):
    customer_id = resolve_ref(cur, merchant_id, "customer", payload.get("customer_id"))
    if not customer_id:
        raise ValueError("customer_id is required")
    add_loyalty_points(cur, merchant_id, customer_id, _points(payload))
    return "processed"


def process_loyalty_redeemed(cur, merchant_id: str, payload: dict):
    customer_id = resolve_ref(cur, merchant_id, "customer", payload.get("customer_id"))
    if not customer_id:
        raise ValueError("customer_id is required")
    points = _points(payload)
    cur.execute(
        """
        SELECT points_balance
        FROM pos_loyalty_points
        WHERE merchant_id = %s AND customer_id = %s
        FOR UPDATE
        """,
        (merchant_id, customer_id),
    )
    row = cur.fetchone()
    if int((row or {}).get("points_balance") or 0) < points:
        raise ValueError("insufficient points")
    cur.execute(
        """
        UPDATE pos_loyalty_points
        SET points_balance = points_balance - %s,
            total_redeemed = total_redeemed + %s,
            updated_at = now()
        WHERE merchant_id = %s AND customer_id = %s
        """,
        (points, points, merchant_id, customer_id),
    )
    return "processed"


def process_inventory_adjusted(cur, merchant_id: str, event_id: str, payload: dict):
    product_id = str(payload.get("product_id") or "")
    change_type = (payload.get("type") or "adjustment").strip().lower()
    if change_type not in {"restock", "adjustment", "damage"}:
        raise ValueError("invalid adjustment type")
    quantity = to_decimal(payload.get("quantity"))
    if quantity < 0:
        raise ValueError("quantity must be >= 0")
    products = lock_products(cur, merchant_id, [product_id])
    p = products.get(product_id)
    if not p:
        raise ValueError(f"unknown product {product_id}")
    if not p.get("track_inventory"):
        raise ValueError("product does not track inventory")
    before = to_decimal(p["stock_quantity"])
    after = stock_target(before, change_type, quantity)
    if after < 0:
        raise ValueError("stock cannot go below zero")
    apply_stock_change(
        cur,
        merchant_id,
        p,
        after - before,
        change_type,
        reference_type="offline",
        reference_id=event_id,
        notes=payload.get("notes"),
        absolute=after,
    )
    return "processed"


_CUSTOMER_FIELDS = ("name", "phone", "email", "address", "credit_limit", "notes")


def process_customer_created(cur, merchant_id: str, payload: dict, terminal_id: str):
    offline_id = payload.get("id")
    if _known_ref(cur, merchant_id, "customer", offline_id):
        return "duplicate"
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValueError("customer name is required")
    cur.execute(
        """
        INSERT INTO pos_customers (id, merchant_id, name, phone, email, address, credit_limit, notes)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            merchant_id,
            name,
            payload.get("phone"),
            payload.get("email"),
            payload.get("address"),
            q2(payload.get("credit_limit") or 0),
            payload.get("notes"),
        ),
    )
    server_id = cur.fetchone()["id"]
    if offline_id and str(offline_id).startswith(OFFLINE_PREFIX):
        _remember_ref(cur, merchant_id, "customer", str(offline_id), server_id, terminal_id)
    return "processed"


def process_customer_updated(cur, merchant_id: str, payload: dict):
    customer_id = resolve_ref(cur, merchant_id, "customer", payload.get("id"))
    if not customer_id:
        raise ValueError("customer id is required")
    changes = payload.get("changes") or {}
    sets: list[str] = []
    params: list = []
    for k in _CUSTOMER_FIELDS:
        if k in changes:
            sets.append(f"{k} = %s")
            params.append(q2(changes[k] or 0) if k == "credit_limit" else changes[k])
    if not sets:
        return "processed"
    cur.execute(
        f"""
        UPDATE pos_customers
        SET {', '.join(sets)}, updated_at = now()
        WHERE merchant_id = %s AND id = %s
        RETURNING id
        """,
        params + [merchant_id, customer_id],
    )
    if not cur.fetchone():
        raise ValueError(f"unknown customer {customer_id}")
    return "processed"


def _pin_hash(payload: dict) -> Optional[str]:
    # Terminals only ever send the bcrypt hash they verified against locally.
    h = payload.get("pin_hash")
    if h and not str(h).startswith("$2"):
        raise ValueError("pin_hash must be a bcrypt hash")
    return h or None


def process_staff_created(cur, merchant_id: str, payload: dict, terminal_id: str):
    offline_id = payload.get("id")
    if _known_ref(cur, merchant_id, "staff", offline_id):
        return "duplicate"
    name = (payload.get("name") or "").strip()
    code = (payload.get("staff_code") or "").strip()
    if not name or not code:
        raise ValueError("name and staff_code are required")
    cur.execute(
        """
        INSERT INTO merchant_staff (id, merchant_id, staff_code, name, email, phone, role, permissions, pin_hash)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
        RETURNING id
        """,
        (
            merchant_id,
            code,
            name,
            payload.get("email"),
            payload.get("phone"),
            payload.get("role") or "cashier",
            json.dumps(payload.get("permissions") or []),
            _pin_hash(payload),
        ),
    )
    server_id = cur.fetchone()["id"]
    if offline_id and str(offline_id).startswith(OFFLINE_PREFIX):
        _remember_ref(cur, merchant_id, "staff", str(offline_id), server_id, terminal_id)
    return "processed"


def process_staff_updated(cur, merchant_id: str, payload: dict):
    staff_id = resolve_ref(cur, merchant_id, "staff", payload.get("id"))
    if not staff_id:
        raise ValueError("staff id is required")
    changes = payload.get("changes") or {}
    sets: list[str] = []
    params: list = []
    for k in ("name", "email", "phone", "role", "status"):
        if k in changes:
            sets.append(f"{k} = %s")
            params.append(changes[k])
    if "permissions" in changes:
        sets.append("permissions = %s::jsonb")
        params.append(json.dumps(changes["permissions"] or []))
    if changes.get("pin_hash"):
        sets.append("pin_hash = %s, failed_pin_attempts = 0, locked_until = NULL")
        params.append(_pin_hash(changes))
    if not sets:
        return "processed"
    cur.execute(
        f"""
        UPDATE merchant_staff
        SET {', '.join(sets)}, updated_at = now()
        WHERE merchant_id = %s AND id = %s
        RETURNING id
        """,
        params + [merchant_id, staff_id],
    )
    if not cur.fetchone():
        raise ValueError(f"unknown staff {staff_id}")
    return "processed"


def process_staff_deleted(cur, merchant_id: str, payload: dict):
    staff_id = resolve_ref(cur, merchant_id, "staff", payload.get("id"))
    if not staff_id:
        raise ValueError("staff id is required")
    cur.execute(
        """
        UPDATE merchant_staff SET status = 'inactive', updated_at = now()
        WHERE merchant_id = %s AND id = %s
        """,
        (merchant_id, staff_id),
    )
    return "processed"


def process_cash_movement(cur, merchant_id: str, event_id: str, payload: dict, created_at: datetime):
    direction = (payload.get("direction") or "").strip().lower()
    if direction not in {"in", "out"}:
        raise ValueError("invalid direction")
    amount = q2(payload.get("amount") or 0)
    if amount <= 0:
        raise ValueError("amount must be > 0")
    day: date = (parse_event_time(payload.get("created_at")) or created_at).date()

    cur.execute(
        """
        SELECT id, status, notes
        FROM pos_cash_sessions
        WHERE merchant_id = %s AND session_date = %s
        FOR UPDATE
        """,
        (merchant_id, day),
    )
    session = cur.fetchone()
    if not session or session["status"] != "open":
        raise ValueError(f"no open cash session for {day.isoformat()}")

    reason = (payload.get("reason") or "").strip()
    # Event id doubles as the movement id so a replay is a no-op.
    cur.execute(
        """
        INSERT INTO pos_cash_movements (id, merchant_id, session_id, direction, amount, reason)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO NOTHING
        RETURNING id
        """,
        (event_id, merchant_id, session["id"], direction, amount, reason or None),
    )
    if not cur.fetchone():
        return "duplicate"

    column = "cash_in" if direction == "in" else "cash_out"
    line = f"[{direction.upper()}] {amount}: {reason or 'no reason'} (offline)"
    notes = f"{session['notes']}\n{line}" if session.get("notes") else line
    cur.execute(
        f"""
        UPDATE pos_cash_sessions
        SET {column} = {column} + %s, notes = %s, updated_at = now()
        WHERE id = %s
        """,
        (amount, notes, session["id"]),
    )
    return "processed"


def apply_event(cur, merchant_id: str, e: dict) -> str:
    payload = e["payload_json"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    event_type = e["event_type"]
    event_id = str(e["id"])
    terminal_id = str(e["terminal_id"])

    if event_type == "sale.created":
        return process_sale(cur, merchant_id, event_id, payload, terminal_id)
    if event_type == "loyalty.points_added":
        return process_loyalty_added(cur, merchant_id, payload)
    if event_type == "loyalty.points_redeemed":
        return process_loyalty_redeemed(cur, merchant_id, payload)
    if event_type == "inventory.adjusted":
        return process_inventory_adjusted(cur, merchant_id, event_id, payload)
    if event_type == "customer.created":
        return process_customer_created(cur, merchant_id, payload, terminal_id)
    if event_type == "customer.updated":
        return process_customer_updated(cur, merchant_id, payload)
    if event_type == "staff.created":
        return process_staff_created(cur, merchant_id, payload, terminal_id)
    if event_type == "staff.updated":
        return process_staff_updated(cur, merchant_id, payload)
    if event_type == "staff.deleted":
        return process_staff_deleted(cur, merchant_id, payload)
    if event_type == "cash.movement":
        return process_cash_movement(cur, merchant_id, event_id, payload, parse_event_time(e["created_at"]))
    raise ValueError(f"Unsupported event type {event_type}")


def _fetch_next_event(cur, merchant_id: str, max_attempts: int):
    cur.execute(
        """
        SELECT o.id, o.terminal_id, o.event_type, o.payload_json, o.created_at, o.attempt_count
        FROM pos_events_outbox o
        JOIN pos_terminals t ON t.id = o.terminal_id
        WHERE t.merchant_id = %s
          AND (
              o.status = 'pending'
              OR (
                  o.status = 'failed'
                  AND (o.next_attempt_at IS NULL OR o.next_attempt_at <= now())
              )
          )
          AND o.attempt_count < %s
        ORDER BY
          CASE WHEN o.status = 'pending' THEN 0 ELSE 1 END,
          o.created_at ASC
        LIMIT 1
        FOR UPDATE OF o SKIP LOCKED
        """,
        (merchant_id, max_attempts),
    )
    return cur.fetchone()


def _process_one(conn, merchant_id: str, max_attempts: int) -> bool:
    with conn.transaction():
        with conn.cursor() as cur:
            set_merchant_context(cur, merchant_id)
            e = _fetch_next_event(cur, merchant_id, max_attempts)
            if not e:
                return False

            process_error = None
            try:
                # Savepoint: a failed posting must not abort the outer transaction,
                # which still has to record the failure.
                with conn.transaction():
                    outcome = apply_event(cur, merchant_id, e)
                    cur.execute(
                        """
                        UPDATE pos_events_outbox
                        SET status = 'processed',
                            processed_at = now(),
                            error_message = NULL,
                            next_attempt_at = NULL
                        WHERE id = %s
                        """,
                        (e["id"],),
                    )
                _json_log("info", "outbox.event.processed", merchant_id=merchant_id, event_id=e["id"], event_type=e["event_type"], outcome=outcome)
            except Exception as ex:
                process_error = ex

            if process_error is not None:
                next_attempt = int(e.get("attempt_count") or 0) + 1
                next_status = "dead" if next_attempt >= max_attempts else "failed"
                message = error_text(process_error)
                cur.execute(
                    """
                    UPDATE pos_events_outbox
                    SET status = %s,
                        attempt_count = %s,
                        error_message = %s,
                        next_attempt_at = %s
                    WHERE id = %s
                    """,
                    (
                        next_status,
                        next_attempt,
                        message,
                        (next_retry_at_for_attempt(next_attempt, str(e["id"])) if next_status == "failed" else None),
                        e["id"],
                    ),
                )
                _json_log(
                    "warning" if next_status == "failed" else "error",
                    "outbox.event.failed",
                    merchant_id=merchant_id,
                    event_id=e["id"],
                    event_type=e["event_type"],
                    status=next_status,
                    attempt=next_attempt,
                    error=message,
                )
    return True


def process_events(db_url: str, merchant_id: str, limit: int, max_attempts: int = MAX_ATTEMPTS_DEFAULT) -> int:
    processed = 0
    with get_conn(db_url) as conn:
        while processed < limit:
            did_one = _process_one(conn, merchant_id, max_attempts)
            if not did_one:
                break
            processed += 1
    return processed


def main():
    parser = argparse.ArgumentParser(description="Apply queued offline terminal events for one merchant")
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--merchant-id", required=True)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--loop", action="store_true", help="Run continuously as a service")
    parser.add_argument("--sleep", type=float, default=1.0, help="Seconds to sleep between loops")
    args = parser.parse_args()
    while True:
        process_events(args.db, args.merchant_id, args.limit, max_attempts=args.max_attempts)
        if not args.loop:
            break
        time.sleep(args.sleep)


if __name__ == "__main__":
    main()
