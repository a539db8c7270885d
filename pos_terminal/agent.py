#!/usr/bin/env python3
"""
Offline-first POS terminal agent.

Keeps a SQLite cache of the merchant's catalog, staff, customers, loyalty and
recent sales so the till keeps selling when the backend is unreachable. Sales
rung up offline wait in `pending_sales`; every other local change waits in
`sync_queue` and is pushed to `/pos/outbox/submit`. A small loopback HTTP API
serves the till UI.
"""
import argparse
import getpass
import json
import os
import platform
import sqlite3
import sys
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse, parse_qs, quote
from urllib.request import Request, urlopen
from urllib.error import HTTPError, URLError
from typing import Optional

import bcrypt

ROOT = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.path.join(ROOT, 'pos.sqlite')  # can be overridden via CLI/env (see main())
SCHEMA_PATH = os.path.join(ROOT, 'sqlite_schema.sql')
CONFIG_PATH = os.path.join(ROOT, 'config.json')  # can be overridden via CLI/env (see main())

DEFAULT_CONFIG = {
    'api_base_url': 'http://localhost:8000',
    'merchant_id': '',
    'terminal_id': '',
    'terminal_token': '',
    'terminal_code': '',
    # Skip the network entirely, e.g. while the uplink is known to be down.
    'force_offline': False,
}

# Used until the terminal has pulled its own settings from the backend.
DEFAULT_TERMINAL_SETTINGS = {
    'auto_logout_minutes': 15,
    'require_pin_for_void': True,
    'require_pin_for_discount': False,
    'allow_offline_sales': True,
    'max_offline_sales': 100,
}

OFFLINE_PREFIX = 'offline_'
LOW_STOCK_THRESHOLD_DEFAULT = 10
MAX_SYNC_ATTEMPTS = 5
OFFLINE_ERRORS = (URLError, OSError)

_SYNC_LOCK = threading.Lock()


class AgentError(Exception):
    """A request the agent refuses; `status` is the HTTP status for the local API."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def load_config():
    if not os.path.exists(CONFIG_PATH):
        save_config(DEFAULT_CONFIG)
    with open(CONFIG_PATH, 'r', encoding='utf-8') as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow ops to override without rewriting the on-disk config.
    if os.environ.get("POS_API_BASE_URL"):
        cfg["api_base_url"] = os.environ["POS_API_BASE_URL"]
    if os.environ.get("POS_TERMINAL_ID"):
        cfg["terminal_id"] = os.environ["POS_TERMINAL_ID"]
    if os.environ.get("POS_TERMINAL_TOKEN"):
        cfg["terminal_token"] = os.environ["POS_TERMINAL_TOKEN"]
    if os.environ.get("POS_FORCE_OFFLINE"):
        cfg["force_offline"] = os.environ["POS_FORCE_OFFLINE"].strip().lower() in {"1", "true", "yes"}
    return cfg


def save_config(data):
    with open(CONFIG_PATH, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def public_config(cfg: dict) -> dict:
    safe = dict(cfg or {})
    safe.pop("terminal_token", None)
    return safe


def db_connect():
    return sqlite3.connect(DB_PATH)


def init_db():
    if not os.path.exists(SCHEMA_PATH):
        raise RuntimeError(f"Missing schema file: {SCHEMA_PATH}")
    with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
        schema = f.read()
    with db_connect() as conn:
        conn.executescript(schema)
        conn.commit()


# Backend HTTP


def fetch_json(url, headers=None, timeout=10):
    req = Request(url, headers=headers or {}, method='GET')
    with urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode('utf-8'))


def post_json(url, payload, headers=None):
    data = json.dumps(payload, default=str).encode('utf-8')
    req = Request(url, data=data, headers=headers or {}, method='POST')
    req.add_header('Content-Type', 'application/json')
    with urlopen(req, timeout=10) as resp:
        return json.loads(resp.read().decode('utf-8'))


def device_headers(cfg):
    return {
        'X-Terminal-Id': cfg.get('terminal_id') or '',
        'X-Terminal-Token': cfg.get('terminal_token') or '',
    }


def is_registered(cfg) -> bool:
    return bool((cfg.get('terminal_id') or '').strip() and (cfg.get('terminal_token') or '').strip())


def api_url(cfg, path: str) -> str:
    base = (cfg.get('api_base_url') or '').strip()
    if not base:
        raise AgentError("missing api_base_url")
    return f"{base.rstrip('/')}{path}"


def _http_error(ex: HTTPError) -> AgentError:
    detail = ex.reason
    try:
        body = json.loads(ex.read().decode('utf-8') or '{}')
        detail = body.get('detail') or detail
    except ValueError:
        pass
    return AgentError(str(detail), status=ex.code)


def api_get(cfg, path: str):
    """GET a device endpoint. 4xx become AgentError; network errors and 5xx propagate as offline."""
    try:
        return fetch_json(api_url(cfg, path), headers=device_headers(cfg))
    except HTTPError as ex:
        if ex.code >= 500:
            raise
        raise _http_error(ex) from None


def api_post(cfg, path: str, payload: dict):
    try:
        return post_json(api_url(cfg, path), payload, headers=device_headers(cfg))
    except HTTPError as ex:
        if ex.code >= 500:
            raise
        raise _http_error(ex) from None


def can_try_online(cfg) -> bool:
    return not cfg.get('force_offline') and is_registered(cfg)


def is_online(cfg, timeout_s: float = 2.0) -> bool:
    if not can_try_online(cfg):
        return False
    try:
        fetch_json(api_url(cfg, "/health/live"), timeout=timeout_s)
        return True
    except OFFLINE_ERRORS:
        return False


# Sync bookkeeping


def get_sync_cursor(resource: str):
    resource = (resource or "").strip()
    if not resource:
        return None, None
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT cursor, cursor_id FROM sync_cursors WHERE resource = ?", (resource,))
        row = cur.fetchone()
        if not row:
            return None, None
        return row["cursor"], row["cursor_id"]


def set_sync_cursor(resource: str, cursor=None, cursor_id=None):
    resource = (resource or "").strip()
    if not resource:
        return
    with db_connect() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO sync_cursors (resource, cursor, cursor_id, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(resource) DO UPDATE SET
              cursor=excluded.cursor,
              cursor_id=excluded.cursor_id,
              updated_at=excluded.updated_at
            """,
            (resource, cursor, cursor_id, _now()),
        )
        conn.commit()


def clear_sync_cursors():
    with db_connect() as conn:
        conn.execute("DELETE FROM sync_cursors")
        conn.commit()


def get_last_sync_time() -> Optional[str]:
    cursor, _ = get_sync_cursor("last_sync")
    return cursor


def log_sync(kind: str, action: str, status: str, details=None):
    with db_connect() as conn:
        conn.execute(
            "INSERT INTO sync_log (type, action, status, details, created_at) VALUES (?, ?, ?, ?, ?)",
            (kind, action, status, json.dumps(details, default=str) if details is not None else None, _now()),
        )
        conn.commit()
    _json_log("error" if status == "error" else "info", f"sync.{kind}.{action}", status=status, details=details)


def list_sync_log(limit: int = 50):
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", (int(limit),))
        return [dict(r) for r in cur.fetchall()]


# Terminal config


def save_terminal_config(res: dict):
    with db_connect() as conn:
        conn.execute(
            """
            INSERT INTO terminal_config
              (id, terminal_id, merchant_id, terminal_code, name, currency, default_tax_rate,
               settings_json, merchant_json, updated_at)
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              terminal_id=excluded.terminal_id,
              merchant_id=excluded.merchant_id,
              terminal_code=excluded.terminal_code,
              name=excluded.name,
              currency=excluded.currency,
              default_tax_rate=excluded.default_tax_rate,
              settings_json=excluded.settings_json,
              merchant_json=excluded.merchant_json,
              updated_at=excluded.updated_at
            """,
            (
                str(res.get("terminal_id") or ""),
                str(res.get("merchant_id") or ""),
                res.get("terminal_code"),
                res.get("name"),
                res.get("currency"),
                float(res.get("default_tax_rate") or 0),
                json.dumps(res.get("settings") or {}),
                json.dumps(res.get("merchant")) if res.get("merchant") else None,
                _now(),
            ),
        )
        conn.commit()


def get_terminal_config() -> dict:
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM terminal_config WHERE id = 1")
        row = cur.fetchone()
    if not row:
        return {"settings": dict(DEFAULT_TERMINAL_SETTINGS), "default_tax_rate": 0.0, "currency": None}
    out = dict(row)
    out["settings"] = {**DEFAULT_TERMINAL_SETTINGS, **json.loads(out.pop("settings_json") or "{}")}
    out["merchant"] = json.loads(out.pop("merchant_json") or "null")
    return out


def terminal_settings() -> dict:
    return get_terminal_config()["settings"]


# Cache writers


def upsert_products(products):
    with db_connect() as conn:
        cur = conn.cursor()
        for p in products or []:
            cur.execute(
                """
                INSERT INTO products
                  (id, name, sku, barcode, category_id, description, price, cost_price, tax_rate,
                   track_inventory, stock_quantity, low_stock_threshold, image_url, is_active,
                   is_featured, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  sku=excluded.sku,
                  barcode=excluded.barcode,
                  category_id=excluded.category_id,
                  description=excluded.description,
                  price=excluded.price,
                  cost_price=excluded.cost_price,
                  tax_rate=excluded.tax_rate,
                  track_inventory=excluded.track_inventory,
                  stock_quantity=excluded.stock_quantity,
                  low_stock_threshold=excluded.low_stock_threshold,
                  image_url=excluded.image_url,
                  is_active=excluded.is_active,
                  is_featured=excluded.is_featured,
                  updated_at=excluded.updated_at
                """,
                (
                    str(p.get("id")),
                    p.get("name"),
                    p.get("sku"),
                    p.get("barcode"),
                    str(p["category_id"]) if p.get("category_id") else None,
                    p.get("description"),
                    float(p.get("price") or 0),
                    float(p.get("cost_price") or 0),
                    float(p["tax_rate"]) if p.get("tax_rate") is not None else None,
                    1 if p.get("track_inventory") else 0,
                    float(p.get("stock_quantity") or 0),
                    float(p["low_stock_threshold"]) if p.get("low_stock_threshold") is not None else None,
                    p.get("image_url"),
                    1 if p.get("is_active", True) else 0,
                    1 if p.get("is_featured") else 0,
                    p.get("changed_at") or p.get("updated_at") or _now(),
                ),
            )
        conn.commit()


def upsert_categories(categories):
    with db_connect() as conn:
        cur = conn.cursor()
        for c in categories or []:
            cur.execute(
                """
                INSERT INTO categories (id, name, description, color, icon, sort_order, is_active, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  description=excluded.description,
                  color=excluded.color,
                  icon=excluded.icon,
                  sort_order=excluded.sort_order,
                  is_active=excluded.is_active,
                  updated_at=excluded.updated_at
                """,
                (
                    str(c.get("id")),
                    c.get("name"),
                    c.get("description"),
                    c.get("color"),
                    c.get("icon"),
                    int(c.get("sort_order") or 0),
                    1 if c.get("is_active", True) else 0,
                    c.get("updated_at") or _now(),
                ),
            )
        conn.commit()


def replace_staff(staff):
    """Mirror the server's active staff; rows with unsynced local edits are kept as they are."""
    ids = [str(s.get("id")) for s in staff or []]
    with db_connect() as conn:
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM staff WHERE pending_sync = 0 AND id NOT IN (%s)" % ",".join(["?"] * len(ids)) if ids
            else "DELETE FROM staff WHERE pending_sync = 0",
            tuple(ids),
        )
        for s in staff or []:
            perms = s.get("permissions")
            if isinstance(perms, str):
                perms = json.loads(perms or "[]")
            cur.execute(
                """
                INSERT INTO staff
                  (id, staff_code, name, email, phone, role, permissions_json, pin_hash, status, pending_sync, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(id) DO UPDATE SET
                  staff_code=excluded.staff_code,
                  name=excluded.name,
                  email=excluded.email,
                  phone=excluded.phone,
                  role=excluded.role,
                  permissions_json=excluded.permissions_json,
                  pin_hash=excluded.pin_hash,
                  status=excluded.status,
                  updated_at=excluded.updated_at
                WHERE staff.pending_sync = 0
                """,
                (
                    str(s.get("id")),
                    s.get("staff_code"),
                    s.get("name"),
                    s.get("email"),
                    s.get("phone"),
                    s.get("role") or "cashier",
                    json.dumps(perms or []),
                    s.get("pin_hash"),
                    s.get("status") or "active",
                    s.get("updated_at") or _now(),
                ),
            )
        conn.commit()


def replace_customers(customers):
    ids = [str(c.get("id")) for c in customers or []]
    with db_connect() as conn:
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM customers WHERE pending_sync = 0 AND id NOT IN (%s)" % ",".join(["?"] * len(ids)) if ids
            else "DELETE FROM customers WHERE pending_sync = 0",
            tuple(ids),
        )
        for c in customers or []:
            cur.execute(
                """
                INSERT INTO customers
                  (id, name, phone, email, address, credit_limit, credit_balance, notes, is_active, pending_sync, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name,
                  phone=excluded.phone,
                  email=excluded.email,
                  address=excluded.address,
                  credit_limit=excluded.credit_limit,
                  credit_balance=excluded.credit_balance,
                  notes=excluded.notes,
                  is_active=excluded.is_active,
                  updated_at=excluded.updated_at
                WHERE customers.pending_sync = 0
                """,
                (
                    str(c.get("id")),
                    c.get("name"),
                    c.get("phone"),
                    c.get("email"),
                    c.get("address"),
                    float(c.get("credit_limit") or 0),
                    float(c.get("credit_balance") or 0),
                    c.get("notes"),
                    1 if c.get("is_active", True) else 0,
                    c.get("updated_at") or _now(),
                ),
            )
        conn.commit()


def save_loyalty(program, points):
    with db_connect() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM loyalty_programs")
        if program:
            cur.execute(
                """
                INSERT INTO loyalty_programs
                  (id, name, points_per_currency, points_value, min_redeem_points, max_redeem_percent, is_active, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(program.get("id")),
                    program.get("name"),
                    float(program.get("points_per_currency") or 0),
                    float(program.get("points_value") or 0),
                    int(program.get("min_redeem_points") or 0),
                    float(program["max_redeem_percent"]) if program.get("max_redeem_percent") is not None else None,
                    1 if program.get("is_active", True) else 0,
                    _now(),
                ),
            )
        for p in points or []:
            cur.execute(
                """
                INSERT INTO loyalty_points
                  (customer_id, points_balance, total_earned, total_redeemed, pending_sync, updated_at)
                VALUES (?, ?, ?, ?, 0, ?)
                ON CONFLICT(customer_id) DO UPDATE SET
                  points_balance=excluded.points_balance,
                  total_earned=excluded.total_earned,
                  total_redeemed=excluded.total_redeemed,
                  updated_at=excluded.updated_at
                WHERE loyalty_points.pending_sync = 0
                """,
                (
                    str(p.get("customer_id")),
                    int(p.get("points_balance") or 0),
                    int(p.get("total_earned") or 0),
                    int(p.get("total_redeemed") or 0),
                    p.get("updated_at") or _now(),
                ),
            )
        conn.commit()


def upsert_sales(sales, is_offline: bool = False):
    with db_connect() as conn:
        cur = conn.cursor()
        for s in sales or []:
            cur.execute(
                """
                INSERT INTO sales
                  (id, sale_number, offline_id, subtotal, tax_amount, discount_amount, total_amount,
                   payment_method, status, customer_id, customer_name, cashier_id, cashier_name,
                   is_offline, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  sale_number=excluded.sale_number,
                  subtotal=excluded.subtotal,
                  tax_amount=excluded.tax_amount,
                  discount_amount=excluded.discount_amount,
                  total_amount=excluded.total_amount,
                  payment_method=excluded.payment_method,
                  status=excluded.status,
                  customer_name=excluded.customer_name,
                  cashier_name=excluded.cashier_name
                """,
                (
                    str(s.get("id")),
                    s.get("sale_number"),
                    s.get("offline_id"),
                    float(s.get("subtotal") or 0),
                    float(s.get("tax_amount") or 0),
                    float(s.get("discount_amount") or 0),
                    float(s.get("total_amount") or 0),
                    s.get("payment_method"),
                    s.get("status") or "completed",
                    str(s["customer_id"]) if s.get("customer_id") else None,
                    s.get("customer_name"),
                    str(s["cashier_id"]) if s.get("cashier_id") else None,
                    s.get("cashier_name"),
                    1 if is_offline else 0,
                    str(s.get("created_at") or _now()),
                ),
            )
        # A server copy of an offline sale replaces the local placeholder.
        offline_ids = [s.get("offline_id") for s in sales or [] if s.get("offline_id") and not is_offline]
        for oid in offline_ids:
            cur.execute("DELETE FROM sales WHERE offline_id = ? AND is_offline = 1", (oid,))
        conn.commit()


# Cache readers


def cached_products(category_id: Optional[str] = None, search: str = ""):
    search = (search or "").strip().lower()
    sql = "SELECT * FROM products WHERE is_active = 1"
    params: list = []
    if category_id:
        sql += " AND category_id = ?"
        params.append(category_id)
    if search:
        needle = f"%{search}%"
        sql += " AND (lower(name) LIKE ? OR lower(COALESCE(sku, '')) LIKE ? OR COALESCE(barcode, '') = ?)"
        params.extend([needle, needle, search])
    sql += " ORDER BY name"
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [dict(r) for r in cur.fetchall()]


def get_product(product_id: str):
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM products WHERE id = ?", (product_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def cached_categories():
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM categories WHERE is_active = 1 ORDER BY sort_order, name")
        return [dict(r) for r in cur.fetchall()]


def _staff_row(r) -> dict:
    out = dict(r)
    out["permissions"] = json.loads(out.pop("permissions_json") or "[]")
    # PIN hashes stay inside the agent.
    out.pop("pin_hash", None)
    return out


def cached_staff():
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM staff WHERE status = 'active' ORDER BY name")
        return [_staff_row(r) for r in cur.fetchall()]


def cached_customers(query: str = "", limit: int = 50):
    query = (query or "").strip().lower()
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        if query:
            needle = f"%{query}%"
            cur.execute(
                """
                SELECT * FROM customers
                WHERE is_active = 1 AND (
                      lower(name) LIKE ?
                   OR lower(COALESCE(phone, '')) LIKE ?
                   OR lower(COALESCE(email, '')) LIKE ?
                )
                ORDER BY name
                LIMIT ?
                """,
                (needle, needle, needle, int(limit)),
            )
        else:
            cur.execute("SELECT * FROM customers WHERE is_active = 1 ORDER BY name LIMIT ?", (int(limit),))
        return [dict(r) for r in cur.fetchall()]


def cached_loyalty_program():
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM loyalty_programs WHERE is_active = 1 LIMIT 1")
        row = cur.fetchone()
        return dict(row) if row else None


def cached_points(customer_id: str) -> dict:
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM loyalty_points WHERE customer_id = ?", (customer_id,))
        row = cur.fetchone()
    if row:
        return dict(row)
    return {"customer_id": customer_id, "points_balance": 0, "total_earned": 0, "total_redeemed": 0, "pending_sync": 0}


# Online-first reads: try the backend, refresh the cache, fall back to the cache.


def sync_catalog(cfg) -> dict:
    since, since_id = get_sync_cursor("catalog")
    if since:
        qs = [f"since={quote(str(since))}"]
        if since_id:
            qs.append(f"since_id={quote(str(since_id))}")
        res = api_get(cfg, "/pos/terminal/catalog/delta?" + "&".join(qs))
        mode = "delta"
        next_cursor = res.get("next_cursor") or since
        next_cursor_id = res.get("next_cursor_id") or since_id
    else:
        res = api_get(cfg, "/pos/terminal/catalog")
        mode = "snapshot"
        next_cursor = res.get("server_time") or _now()
        next_cursor_id = None
    products = res.get("products") or []
    categories = res.get("categories") or []
    upsert_products(products)
    upsert_categories(categories)
    set_sync_cursor("catalog", next_cursor, next_cursor_id)
    return {"mode": mode, "products": len(products), "categories": len(categories)}


def _refresh(cfg, fn) -> bool:
    """Run a cache refresh; False when the backend is unreachable."""
    if not can_try_online(cfg):
        return False
    try:
        fn(cfg)
        return True
    except OFFLINE_ERRORS as ex:
        _json_log("warning", "agent.refresh.offline", error=str(ex))
        return False


def _refresh_staff(cfg):
    replace_staff(api_get(cfg, "/pos/terminal/staff").get("staff") or [])


def _refresh_customers(cfg):
    replace_customers(api_get(cfg, "/pos/terminal/customers").get("customers") or [])


def _refresh_loyalty(cfg):
    res = api_get(cfg, "/pos/terminal/loyalty")
    save_loyalty(res.get("program"), res.get("points") or [])


def _refresh_sales(cfg):
    upsert_sales(api_get(cfg, "/pos/terminal/sales/recent?limit=200").get("sales") or [])


def get_products(cfg, category_id: Optional[str] = None, search: str = ""):
    online = _refresh(cfg, sync_catalog)
    return {"products": cached_products(category_id, search), "is_offline": not online}


def get_categories(cfg):
    online = _refresh(cfg, sync_catalog)
    return {"categories": cached_categories(), "is_offline": not online}


def get_staff(cfg):
    online = _refresh(cfg, _refresh_staff)
    return {"staff": cached_staff(), "is_offline": not online}


def get_customers(cfg, query: str = "", limit: int = 50):
    online = _refresh(cfg, _refresh_customers)
    return {"customers": cached_customers(query, limit), "is_offline": not online}


def get_loyalty(cfg, customer_id: Optional[str] = None):
    online = _refresh(cfg, _refresh_loyalty)
    out = {"program": cached_loyalty_program(), "is_offline": not online}
    if customer_id:
        out["points"] = cached_points(customer_id)
    return out


def get_sales(cfg, start: Optional[str] = None, end: Optional[str] = None):
    online = _refresh(cfg, _refresh_sales)
    return {"sales": cached_sales(start, end), "is_offline": not online}


# Outbox queue


def queue_event(event_type: str, payload: dict, event_id: Optional[str] = None) -> str:
    # Must be a UUID to match the backend outbox id.
    event_id = event_id or str(uuid.uuid4())
    with db_connect() as conn:
        conn.execute(
            """
            INSERT INTO sync_queue (event_id, event_type, payload_json, created_at, status)
            VALUES (?, ?, ?, ?, 'pending')
            ON CONFLICT(event_id) DO NOTHING
            """,
            (event_id, event_type, json.dumps(payload, default=str), _now()),
        )
        conn.commit()
    return event_id


def list_queue(include_sent: bool = False):
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        if include_sent:
            cur.execute("SELECT * FROM sync_queue ORDER BY id")
        else:
            cur.execute("SELECT * FROM sync_queue WHERE status != 'sent' ORDER BY id")
        return [dict(r) for r in cur.fetchall()]


def count_pending_changes() -> int:
    with db_connect() as conn:
        row = conn.execute("SELECT COUNT(1) FROM sync_queue WHERE status != 'sent'").fetchone()
        return int(row[0] if row else 0)


def _clear_pending_flag(cur, event_type: str, payload: dict):
    if event_type.startswith("customer."):
        cur.execute("UPDATE customers SET pending_sync = 0 WHERE id = ?", (payload.get("id"),))
    elif event_type.startswith("staff."):
        cur.execute("UPDATE staff SET pending_sync = 0 WHERE id = ?", (payload.get("id"),))
    elif event_type.startswith("loyalty."):
        cur.execute("UPDATE loyalty_points SET pending_sync = 0 WHERE customer_id = ?", (payload.get("customer_id"),))
    elif event_type == "inventory.adjusted":
        cur.execute("UPDATE inventory_log SET pending_sync = 0 WHERE id = ?", (payload.get("log_id"),))


def push_sync_queue(cfg) -> dict:
    """Submit queued events; accepted and duplicate ids are done, rejected ones are retried later."""
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute(
            """
            SELECT event_id, event_type, payload_json, created_at
            FROM sync_queue
            WHERE status = 'pending' OR (status = 'failed' AND attempts < ?)
            ORDER BY id
            """,
            (MAX_SYNC_ATTEMPTS,),
        )
        rows = cur.fetchall()
    if not rows:
        return {"sent": 0, "rejected": []}
    events = [
        {
            "event_id": r["event_id"],
            "event_type": r["event_type"],
            "payload": json.loads(r["payload_json"]),
            "created_at": r["created_at"],
        }
        for r in rows
    ]
    res = api_post(cfg, "/pos/outbox/submit", {"terminal_id": cfg.get("terminal_id"), "events": events})
    done = set(res.get("accepted") or []) | set(res.get("duplicates") or [])
    rejected = {str(r.get("event_id")): r.get("error") for r in res.get("rejected") or []}
    by_id = {e["event_id"]: e for e in events}
    with db_connect() as conn:
        cur = conn.cursor()
        for eid in done:
            cur.execute("UPDATE sync_queue SET status = 'sent', sent_at = ?, error = NULL WHERE event_id = ?", (_now(), eid))
            ev = by_id.get(eid)
            if ev:
                _clear_pending_flag(cur, ev["event_type"], ev["payload"])
        for eid, err in rejected.items():
            cur.execute(
                "UPDATE sync_queue SET status = 'failed', attempts = attempts + 1, error = ? WHERE event_id = ?",
                (err, eid),
            )
        conn.commit()
    return {"sent": len(done), "rejected": [{"event_id": k, "error": v} for k, v in rejected.items()]}


def _push_now(cfg) -> bool:
    """Best-effort immediate push after a local change; False when it stayed queued."""
    if not can_try_online(cfg):
        return False
    try:
        res = push_sync_queue(cfg)
    except OFFLINE_ERRORS:
        return False
    except AgentError as ex:
        _json_log("warning", "agent.outbox.push_failed", error=ex.message, status=ex.status)
        return False
    return not res["rejected"]


# Sales


def _round2(x) -> float:
    return round(float(x or 0), 2)


def compute_sale_totals(items, products: dict, default_tax_rate: float) -> dict:
    """Local receipt totals; the backend recomputes them when the sale syncs."""
    lines = []
    subtotal = 0.0
    discount_total = 0.0
    tax_total = 0.0
    for it in items:
        p = products[str(it["product_id"])]
        qty = float(it.get("quantity") or 0)
        price = float(it["unit_price"]) if it.get("unit_price") is not None else float(p.get("price") or 0)
        gross = price * qty
        disc = float(it.get("discount") or 0)
        if it.get("discount_type") == "percentage":
            disc = gross * disc / 100.0
        disc = min(max(disc, 0.0), gross)
        net = gross - disc
        rate = float(p["tax_rate"]) if p.get("tax_rate") is not None else float(default_tax_rate or 0)
        tax = _round2(net * rate)
        subtotal += gross
        discount_total += disc
        tax_total += tax
        lines.append(
            {
                "product_id": str(it["product_id"]),
                "product_name": p.get("name"),
                "quantity": qty,
                "unit_price": _round2(price),
                "discount": _round2(disc),
                "tax_amount": tax,
                "line_total": _round2(net),
            }
        )
    return {
        "lines": lines,
        "subtotal": _round2(subtotal),
        "discount_amount": _round2(discount_total),
        "tax_amount": _round2(tax_total),
        "total_amount": _round2(subtotal - discount_total + tax_total),
    }


def count_pending_sales() -> int:
    with db_connect() as conn:
        row = conn.execute("SELECT COUNT(1) FROM pending_sales WHERE sync_status != 'synced'").fetchone()
        return int(row[0] if row else 0)


def list_pending_sales():
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM pending_sales ORDER BY local_id")
        out = []
        for r in cur.fetchall():
            d = dict(r)
            d["payload"] = json.loads(d.pop("payload_json"))
            out.append(d)
        return out


def _validate_sale(data: dict):
    items = data.get("items") or []
    if not items:
        raise AgentError("sale must have at least one item")
    for it in items:
        if not it.get("product_id"):
            raise AgentError("product_id is required")
        try:
            qty = float(it.get("quantity") or 0)
            price = float(it["unit_price"]) if it.get("unit_price") is not None else 0.0
            disc = float(it.get("discount") or 0)
        except (TypeError, ValueError):
            raise AgentError("quantity, unit_price and discount must be numbers")
        if qty <= 0:
            raise AgentError("quantity must be > 0")
        if price < 0:
            raise AgentError("unit_price must be >= 0")
        if disc < 0:
            raise AgentError("discount must be >= 0")
    return items


def create_sale(cfg, data: dict) -> dict:
    """Check out a cart: online through the backend, otherwise into the pending queue."""
    items = _validate_sale(data)
    payload = dict(data)
    payload["offline_id"] = payload.get("offline_id") or uuid.uuid4().hex
    customer_id = str(payload.get("customer_id") or "")

    if can_try_online(cfg) and not customer_id.startswith(OFFLINE_PREFIX):
        try:
            res = api_post(cfg, "/pos/terminal/sales", payload)
        except OFFLINE_ERRORS as ex:
            _json_log("warning", "agent.sale.offline_fallback", error=str(ex))
        else:
            upsert_sales([res["sale"]])
            _apply_local_stock(items)
            return {**res, "is_offline": False}

    return _create_offline_sale(payload, items)


def _apply_local_stock(items):
    with db_connect() as conn:
        for it in items:
            conn.execute(
                """
                UPDATE products SET stock_quantity = stock_quantity - ?
                WHERE id = ? AND track_inventory = 1
                """,
                (float(it.get("quantity") or 0), str(it["product_id"])),
            )
        conn.commit()


def _create_offline_sale(payload: dict, items) -> dict:
    settings = terminal_settings()
    if not settings.get("allow_offline_sales", True):
        raise AgentError("offline sales are disabled for this terminal", status=409)
    limit = int(settings.get("max_offline_sales") or 0)
    if limit and count_pending_sales() >= limit:
        raise AgentError("offline sale limit reached; sync before selling", status=409)
    if payload.get("discount_code"):
        raise AgentError("discount codes cannot be applied offline", status=409)
    method = (payload.get("payment_method") or "cash").strip().lower()
    tenders = {method} | {(p.get("method") or "").lower() for p in payload.get("payments") or []}
    if "credit" in tenders:
        raise AgentError("credit sales need a connection", status=409)

    products = {}
    for it in items:
        p = get_product(str(it["product_id"]))
        if not p or not p.get("is_active"):
            raise AgentError(f"unknown product: {it['product_id']}", status=404)
        products[str(it["product_id"])] = p
    totals = compute_sale_totals(items, products, get_terminal_config().get("default_tax_rate") or 0)

    created_at = _now()
    sale_number = f"OFF-{_now_ms()}"
    with db_connect() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO pending_sales (offline_id, sale_number, payload_json, total_amount, sync_status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
            """,
            (payload["offline_id"], sale_number, json.dumps(payload, default=str), totals["total_amount"], created_at),
        )
        local_id = cur.lastrowid
        for it in items:
            cur.execute(
                """
                UPDATE products SET stock_quantity = stock_quantity - ?
                WHERE id = ? AND track_inventory = 1
                """,
                (float(it["quantity"]), str(it["product_id"])),
            )
        conn.commit()

    sale = {
        "id": f"{OFFLINE_PREFIX}{local_id}",
        "sale_number": sale_number,
        "offline_id": payload["offline_id"],
        "subtotal": totals["subtotal"],
        "tax_amount": totals["tax_amount"],
        "discount_amount": totals["discount_amount"],
        "total_amount": totals["total_amount"],
        "payment_method": method,
        "status": "completed",
        "customer_id": payload.get("customer_id"),
        "customer_name": payload.get("customer_name"),
        "cashier_id": payload.get("cashier_id"),
        "cashier_name": payload.get("cashier_name"),
        "created_at": created_at,
    }
    upsert_sales([sale], is_offline=True)
    _json_log("info", "agent.sale.offline", sale_number=sale_number, total=totals["total_amount"])
    return {"sale": sale, "items": totals["lines"], "is_offline": True}


def cached_sales(start: Optional[str] = None, end: Optional[str] = None):
    sql = "SELECT * FROM sales"
    params: list = []
    if start and end:
        sql += " WHERE substr(created_at, 1, 10) BETWEEN ? AND ?"
        params = [start[:10], end[:10]]
    sql += " ORDER BY created_at DESC"
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute(sql, tuple(params))
        return [dict(r) for r in cur.fetchall()]


def sales_report(start: str, end: str) -> dict:
    """Totals over cached and offline sales, grouped by tender and day."""
    sales = [s for s in cached_sales(start, end) if (s.get("status") or "completed") != "voided"]
    revenue = sum(float(s.get("total_amount") or 0) for s in sales)
    by_method: dict = {}
    by_day: dict = {}
    for s in sales:
        m = by_method.setdefault(s.get("payment_method") or "unknown", {"count": 0, "total": 0.0})
        m["count"] += 1
        m["total"] = _round2(m["total"] + float(s.get("total_amount") or 0))
        d = by_day.setdefault(str(s.get("created_at") or "")[:10], {"count": 0, "total": 0.0})
        d["count"] += 1
        d["total"] = _round2(d["total"] + float(s.get("total_amount") or 0))
    return {
        "total_sales": len(sales),
        "total_revenue": _round2(revenue),
        "total_tax": _round2(sum(float(s.get("tax_amount") or 0) for s in sales)),
        "total_discount": _round2(sum(float(s.get("discount_amount") or 0) for s in sales)),
        "average_sale": _round2(revenue / len(sales)) if sales else 0.0,
        "sales_by_payment_method": by_method,
        "sales_by_day": by_day,
        "is_offline_data": True,
    }


# Cart


def save_cart(items) -> dict:
    with db_connect() as conn:
        conn.execute(
            """
            INSERT INTO cart (id, items_json, updated_at) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET items_json=excluded.items_json, updated_at=excluded.updated_at
            """,
            (json.dumps(items or [], default=str), _now()),
        )
        conn.commit()
    return {"items": items or []}


def load_cart() -> dict:
    with db_connect() as conn:
        row = conn.execute("SELECT items_json, updated_at FROM cart WHERE id = 1").fetchone()
    if not row:
        return {"items": [], "updated_at": None}
    return {"items": json.loads(row[0] or "[]"), "updated_at": row[1]}


def clear_cart():
    with db_connect() as conn:
        conn.execute("DELETE FROM cart")
        conn.commit()


# Staff


def _hash_pin(pin: str) -> str:
    pin = (pin or "").strip()
    if not pin.isdigit() or not 4 <= len(pin) <= 6:
        raise AgentError("pin must be 4 to 6 digits")
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def get_staff_row(staff_id: str):
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM staff WHERE id = ?", (staff_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def create_staff(cfg, data: dict) -> dict:
    name = (data.get("name") or "").strip()
    code = (data.get("staff_code") or "").strip()
    if not name or not code:
        raise AgentError("name and staff_code are required")
    with db_connect() as conn:
        if conn.execute("SELECT 1 FROM staff WHERE staff_code = ?", (code,)).fetchone():
            raise AgentError("staff code already exists", status=409)
    pin_hash = _hash_pin(data.get("pin"))
    staff_id = f"{OFFLINE_PREFIX}{_now_ms()}"
    perms = data.get("permissions") or []
    with db_connect() as conn:
        conn.execute(
            """
            INSERT INTO staff
              (id, staff_code, name, email, phone, role, permissions_json, pin_hash, status, pending_sync, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', 1, ?)
            """,
            (staff_id, code, name, data.get("email"), data.get("phone"), data.get("role") or "cashier",
             json.dumps(perms), pin_hash, _now()),
        )
        conn.commit()
    queue_event(
        "staff.created",
        {
            "id": staff_id,
            "staff_code": code,
            "name": name,
            "email": data.get("email"),
            "phone": data.get("phone"),
            "role": data.get("role") or "cashier",
            "permissions": perms,
            "pin_hash": pin_hash,
        },
    )
    synced = _push_now(cfg)
    return {"staff": _staff_row(get_staff_row(staff_id)), "is_offline": not synced}


_STAFF_FIELDS = ("name", "email", "phone", "role", "status")


def update_staff(cfg, staff_id: str, changes: dict) -> dict:
    row = get_staff_row(staff_id)
    if not row:
        raise AgentError("staff not found", status=404)
    out: dict = {k: changes[k] for k in _STAFF_FIELDS if k in changes}
    sets = [f"{k} = ?" for k in out]
    params = list(out.values())
    if "permissions" in changes:
        out["permissions"] = changes["permissions"] or []
        sets.append("permissions_json = ?")
        params.append(json.dumps(out["permissions"]))
    if changes.get("pin"):
        out["pin_hash"] = _hash_pin(changes["pin"])
        sets.append("pin_hash = ?")
        params.append(out["pin_hash"])
    if not sets:
        raise AgentError("no changes")
    with db_connect() as conn:
        conn.execute(
            f"UPDATE staff SET {', '.join(sets)}, pending_sync = 1, updated_at = ? WHERE id = ?",
            params + [_now(), staff_id],
        )
        conn.commit()
    queue_event("staff.updated", {"id": staff_id, "changes": out})
    synced = _push_now(cfg)
    return {"staff": _staff_row(get_staff_row(staff_id)), "is_offline": not synced}


def delete_staff(cfg, staff_id: str) -> dict:
    if not get_staff_row(staff_id):
        raise AgentError("staff not found", status=404)
    queue_event("staff.deleted", {"id": staff_id})
    with db_connect() as conn:
        conn.execute("DELETE FROM staff WHERE id = ?", (staff_id,))
        conn.commit()
    synced = _push_now(cfg)
    return {"ok": True, "is_offline": not synced}


# Customers


_CUSTOMER_FIELDS = ("name", "phone", "email", "address", "credit_limit", "notes", "is_active")


def get_customer(customer_id: str):
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM customers WHERE id = ?", (customer_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def create_customer(cfg, data: dict) -> dict:
    name = (data.get("name") or "").strip()
    if not name:
        raise AgentError("name is required")
    customer_id = f"{OFFLINE_PREFIX}{_now_ms()}"
    credit_limit = float(data.get("credit_limit") or 0)
    if credit_limit < 0:
        raise AgentError("credit_limit must be >= 0")
    with db_connect() as conn:
        conn.execute(
            """
            INSERT INTO customers
              (id, name, phone, email, address, credit_limit, credit_balance, notes, is_active, pending_sync, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, 1, 1, ?)
            """,
            (customer_id, name, data.get("phone"), data.get("email"), data.get("address"), credit_limit,
             data.get("notes"), _now()),
        )
        conn.commit()
    queue_event(
        "customer.created",
        {
            "id": customer_id,
            "name": name,
            "phone": data.get("phone"),
            "email": data.get("email"),
            "address": data.get("address"),
            "credit_limit": credit_limit,
            "notes": data.get("notes"),
        },
    )
    synced = _push_now(cfg)
    return {"customer": get_customer(customer_id), "is_offline": not synced}


def update_customer(cfg, customer_id: str, changes: dict) -> dict:
    if not get_customer(customer_id):
        raise AgentError("customer not found", status=404)
    out = {k: changes[k] for k in _CUSTOMER_FIELDS if k in changes}
    if not out:
        raise AgentError("no changes")
    if "name" in out and not (out["name"] or "").strip():
        raise AgentError("name is required")
    local = dict(out)
    if "is_active" in local:
        local["is_active"] = 1 if local["is_active"] else 0
    with db_connect() as conn:
        conn.execute(
            f"UPDATE customers SET {', '.join(f'{k} = ?' for k in local)}, pending_sync = 1, updated_at = ? WHERE id = ?",
            list(local.values()) + [_now(), customer_id],
        )
        conn.commit()
    queue_event("customer.updated", {"id": customer_id, "changes": out})
    synced = _push_now(cfg)
    return {"customer": get_customer(customer_id), "is_offline": not synced}


# Loyalty


def _points_arg(points) -> int:
    try:
        n = int(points)
    except (TypeError, ValueError):
        raise AgentError("points must be an integer")
    if n <= 0:
        raise AgentError("points must be > 0")
    return n


def add_loyalty_points(cfg, customer_id: str, points, reason: Optional[str] = None) -> dict:
    n = _points_arg(points)
    if not get_customer(customer_id):
        raise AgentError("customer not found", status=404)
    with db_connect() as conn:
        conn.execute(
            """
            INSERT INTO loyalty_points (customer_id, points_balance, total_earned, total_redeemed, pending_sync, updated_at)
            VALUES (?, ?, ?, 0, 1, ?)
            ON CONFLICT(customer_id) DO UPDATE SET
              points_balance = points_balance + excluded.points_balance,
              total_earned = total_earned + excluded.total_earned,
              pending_sync = 1,
              updated_at = excluded.updated_at
            """,
            (customer_id, n, n, _now()),
        )
        conn.commit()
    queue_event("loyalty.points_added", {"customer_id": customer_id, "points": n, "reason": reason})
    synced = _push_now(cfg)
    return {"points": cached_points(customer_id), "is_offline": not synced}


def redeem_loyalty_points(cfg, customer_id: str, points, reason: Optional[str] = None) -> dict:
    n = _points_arg(points)
    current = cached_points(customer_id)
    if int(current.get("points_balance") or 0) < n:
        raise AgentError("insufficient points", status=409)
    with db_connect() as conn:
        conn.execute(
            """
            UPDATE loyalty_points
            SET points_balance = points_balance - ?, total_redeemed = total_redeemed + ?,
                pending_sync = 1, updated_at = ?
            WHERE customer_id = ?
            """,
            (n, n, _now(), customer_id),
        )
        conn.commit()
    queue_event("loyalty.points_redeemed", {"customer_id": customer_id, "points": n, "reason": reason})
    synced = _push_now(cfg)
    return {"points": cached_points(customer_id), "is_offline": not synced}


# Inventory


def adjust_inventory(cfg, product_id: str, adjustment, reason: Optional[str] = None) -> dict:
    """Apply a stock delta locally and queue it; the result may not go below zero."""
    product = get_product(product_id)
    if not product:
        raise AgentError("product not found", status=404)
    if not product.get("track_inventory"):
        raise AgentError("product does not track inventory")
    try:
        delta = float(adjustment)
    except (TypeError, ValueError):
        raise AgentError("adjustment must be a number")
    if delta == 0:
        raise AgentError("adjustment must be non-zero")
    before = float(product.get("stock_quantity") or 0)
    after = before + delta
    if after < 0:
        raise AgentError("insufficient stock", status=409)
    with db_connect() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE products SET stock_quantity = ? WHERE id = ?", (after, product_id))
        cur.execute(
            """
            INSERT INTO inventory_log (product_id, type, quantity_change, quantity_before, quantity_after, reason, created_at)
            VALUES (?, 'adjustment', ?, ?, ?, ?, ?)
            """,
            (product_id, delta, before, after, reason, _now()),
        )
        log_id = cur.lastrowid
        conn.commit()
    # Deltas travel as restock/damage so concurrent sales on other terminals still add up.
    queue_event(
        "inventory.adjusted",
        {
            "product_id": product_id,
            "type": "restock" if delta > 0 else "damage",
            "quantity": abs(delta),
            "notes": reason,
            "log_id": log_id,
        },
    )
    synced = _push_now(cfg)
    return {"product_id": product_id, "new_quantity": after, "is_offline": not synced}


def inventory_alerts() -> list:
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id, name, sku, stock_quantity, low_stock_threshold
            FROM products
            WHERE is_active = 1 AND track_inventory = 1
              AND stock_quantity <= COALESCE(low_stock_threshold, ?)
            ORDER BY stock_quantity, name
            """,
            (LOW_STOCK_THRESHOLD_DEFAULT,),
        )
        rows = [dict(r) for r in cur.fetchall()]
    for r in rows:
        r["alert_type"] = "out_of_stock" if float(r["stock_quantity"] or 0) <= 0 else "low_stock"
        r["is_offline_computed"] = True
    return rows


def list_inventory_log(product_id: Optional[str] = None, limit: int = 100):
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        if product_id:
            cur.execute(
                "SELECT * FROM inventory_log WHERE product_id = ? ORDER BY id DESC LIMIT ?",
                (product_id, int(limit)),
            )
        else:
            cur.execute("SELECT * FROM inventory_log ORDER BY id DESC LIMIT ?", (int(limit),))
        return [dict(r) for r in cur.fetchall()]


# Cash drawer


def record_cash_movement(cfg, direction: str, amount, reason: str) -> dict:
    direction = (direction or "").strip().lower()
    if direction not in {"in", "out"}:
        raise AgentError("direction must be in or out")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise AgentError("amount must be a number")
    if value <= 0:
        raise AgentError("amount must be > 0")
    reason = (reason or "").strip()
    if not reason:
        raise AgentError("reason is required")
    event_id = queue_event(
        "cash.movement",
        {"direction": direction, "amount": _round2(value), "reason": reason, "created_at": _now()},
    )
    synced = _push_now(cfg)
    return {"event_id": event_id, "is_offline": not synced}


# Staff session


def _save_session(s: dict):
    now = _now()
    perms = s.get("permissions") or []
    with db_connect() as conn:
        conn.execute(
            """
            INSERT INTO staff_session
              (id, staff_id, staff_code, name, role, permissions_json, pin_hash, started_at, last_activity_at)
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              staff_id=excluded.staff_id,
              staff_code=excluded.staff_code,
              name=excluded.name,
              role=excluded.role,
              permissions_json=excluded.permissions_json,
              pin_hash=excluded.pin_hash,
              started_at=excluded.started_at,
              last_activity_at=excluded.last_activity_at
            """,
            (str(s["staff_id"]), s.get("staff_code"), s.get("name"), s.get("role"), json.dumps(perms),
             s.get("pin_hash"), now, now),
        )
        if s.get("pin_hash"):
            # Keep the cached hash current so the next sign-in works offline.
            conn.execute(
                "UPDATE staff SET pin_hash = ? WHERE id = ? AND pending_sync = 0",
                (s["pin_hash"], str(s["staff_id"])),
            )
        conn.commit()


def _find_cached_staff(staff_id: Optional[str], staff_code: Optional[str]):
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        if staff_id:
            cur.execute("SELECT * FROM staff WHERE id = ? AND status = 'active'", (staff_id,))
        else:
            cur.execute("SELECT * FROM staff WHERE staff_code = ? AND status = 'active'", (staff_code,))
        row = cur.fetchone()
        return dict(row) if row else None


def verify_staff_pin_offline(staff_id: Optional[str], staff_code: Optional[str], pin: str):
    row = _find_cached_staff(staff_id, staff_code)
    if not row or not row.get("pin_hash"):
        return None
    try:
        if not bcrypt.checkpw(pin.encode("utf-8"), row["pin_hash"].encode("utf-8")):
            return None
    except ValueError:
        # Bad hash in cache.
        return None
    return {
        "staff_id": row["id"],
        "staff_code": row["staff_code"],
        "name": row["name"],
        "role": row["role"],
        "permissions": json.loads(row.get("permissions_json") or "[]"),
        "pin_hash": row["pin_hash"],
    }


def login_staff(cfg, pin: str, staff_id: Optional[str] = None, staff_code: Optional[str] = None) -> dict:
    """Start the single active staff session; the backend checks the PIN when reachable."""
    pin = (pin or "").strip()
    if not pin or not (staff_id or staff_code):
        raise AgentError("staff and pin are required")
    session = None
    is_offline = True
    if can_try_online(cfg) and not str(staff_id or "").startswith(OFFLINE_PREFIX):
        body = {"pin": pin}
        if staff_id:
            body["staff_id"] = staff_id
        else:
            body["staff_code"] = staff_code
        try:
            session = api_post(cfg, "/pos/terminal/staff/verify-pin", body)
            is_offline = False
        except OFFLINE_ERRORS as ex:
            _json_log("warning", "agent.pin.offline_fallback", error=str(ex))
    if session is None:
        session = verify_staff_pin_offline(staff_id, staff_code, pin)
        if session is None:
            raise AgentError("invalid staff or pin", status=401)
    _save_session(session)
    out = current_session(cfg)
    out["is_offline"] = is_offline
    return out


def current_session(cfg) -> Optional[dict]:
    """The signed-in staff member, or None; idle sessions past auto_logout_minutes end here."""
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("SELECT * FROM staff_session WHERE id = 1")
        row = cur.fetchone()
    if not row:
        return None
    minutes = int(terminal_settings().get("auto_logout_minutes") or 0)
    last = _parse_time(row["last_activity_at"])
    if minutes > 0 and last and datetime.now(timezone.utc) - last > timedelta(minutes=minutes):
        logout_staff()
        _json_log("info", "agent.session.auto_logout", staff_id=row["staff_id"])
        return None
    out = dict(row)
    out.pop("id", None)
    out.pop("pin_hash", None)
    out["permissions"] = json.loads(out.pop("permissions_json") or "[]")
    return out


def touch_session(cfg) -> Optional[dict]:
    if current_session(cfg) is None:
        return None
    with db_connect() as conn:
        conn.execute("UPDATE staff_session SET last_activity_at = ? WHERE id = 1", (_now(),))
        conn.commit()
    return current_session(cfg)


def logout_staff():
    with db_connect() as conn:
        conn.execute("DELETE FROM staff_session")
        conn.commit()


# Sync


def _sale_note(label: str, note: Optional[str]) -> str:
    note = (note or "").strip()
    return f"[Offline Sale] {label}" + (f" - {note}" if note else "")


def sync_pending_sales(cfg) -> dict:
    """
    Push offline sales oldest first. Sales that reference a customer created
    offline go through the outbox so the backend can resolve the customer id.
    Stops at the first network failure; synced rows are removed afterwards.
    """
    synced = 0
    failed = 0
    errors = []
    with db_connect() as conn:
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute(
            """
            SELECT local_id, offline_id, sale_number, payload_json, created_at
            FROM pending_sales
            WHERE sync_status = 'pending' OR (sync_status = 'failed' AND attempts < ?)
            ORDER BY local_id
            """,
            (MAX_SYNC_ATTEMPTS,),
        )
        rows = [dict(r) for r in cur.fetchall()]

    for r in rows:
        payload = json.loads(r["payload_json"])
        payload["offline_id"] = r["offline_id"]
        server_id = None
        try:
            if str(payload.get("customer_id") or "").startswith(OFFLINE_PREFIX):
                event = dict(payload)
                event["offline_sale_number"] = r["sale_number"]
                event["created_at"] = r["created_at"]
                # Deterministic id so a retried queue entry is a duplicate, not a second sale.
                queue_event("sale.created", event, event_id=str(uuid.uuid5(uuid.NAMESPACE_URL, r["offline_id"])))
            else:
                payload["notes"] = _sale_note(r["sale_number"], payload.get("notes"))
                payload["created_at"] = r["created_at"]
                res = api_post(cfg, "/pos/terminal/sales", payload)
                server_id = str(res["sale"]["id"])
                upsert_sales([res["sale"]])
        except OFFLINE_ERRORS as ex:
            errors.append({"sale_number": r["sale_number"], "error": str(ex)})
            break
        except AgentError as ex:
            failed += 1
            errors.append({"sale_number": r["sale_number"], "error": ex.message})
            with db_connect() as conn:
                conn.execute(
                    "UPDATE pending_sales SET sync_status = 'failed', attempts = attempts + 1, error = ? WHERE local_id = ?",
                    (ex.message, r["local_id"]),
                )
                conn.commit()
            continue
        synced += 1
        with db_connect() as conn:
            conn.execute(
                """
                UPDATE pending_sales SET sync_status = 'synced', server_id = ?, error = NULL, synced_at = ?
                WHERE local_id = ?
                """,
                (server_id, _now(), r["local_id"]),
            )
            conn.commit()

    with db_connect() as conn:
        conn.execute("DELETE FROM pending_sales WHERE sync_status = 'synced'")
        conn.commit()
    return {"synced": synced, "failed": failed, "errors": errors}


def sync_from_server(cfg) -> dict:
    out = {}
    save_terminal_config(api_get(cfg, "/pos/terminal/config"))
    out["catalog"] = sync_catalog(cfg)
    staff = api_get(cfg, "/pos/terminal/staff").get("staff") or []
    replace_staff(staff)
    out["staff"] = len(staff)
    customers = api_get(cfg, "/pos/terminal/customers").get("customers") or []
    replace_customers(customers)
    out["customers"] = len(customers)
    loyalty = api_get(cfg, "/pos/terminal/loyalty")
    save_loyalty(loyalty.get("program"), loyalty.get("points") or [])
    out["loyalty_points"] = len(loyalty.get("points") or [])
    sales = api_get(cfg, "/pos/terminal/sales/recent?limit=200").get("sales") or []
    upsert_sales(sales)
    out["sales"] = len(sales)
    set_sync_cursor("last_sync", _now(), None)
    return out


def sync_data(cfg) -> dict:
    """Push local changes, then pull fresh data. Only one sync runs at a time."""
    if not _SYNC_LOCK.acquire(blocking=False):
        return {"ok": False, "skipped": True, "error": "sync already in progress"}
    try:
        if not is_registered(cfg):
            return {"ok": False, "error": "terminal is not registered"}
        if not is_online(cfg):
            return {"ok": False, "error": "offline"}
        result = {"ok": True, "errors": []}
        steps = (
            ("sales", "push", sync_pending_sales),
            ("outbox", "push", push_sync_queue),
            ("server", "pull", sync_from_server),
        )
        for kind, action, fn in steps:
            try:
                result[kind] = fn(cfg)
                log_sync(kind, action, "ok", result[kind])
            except (AgentError, URLError, OSError, ValueError) as ex:
                msg = ex.message if isinstance(ex, AgentError) else str(ex)
                result["ok"] = False
                result["errors"].append({"step": kind, "error": msg})
                log_sync(kind, action, "error", {"error": msg})
        try:
            api_post(
                cfg,
                "/pos/terminal/heartbeat",
                {"pending_sync_count": count_pending_sales() + count_pending_changes()},
            )
        except (AgentError, URLError, OSError) as ex:
            _json_log("warning", "agent.heartbeat.failed", error=str(ex))
        result["last_sync_at"] = get_last_sync_time()
        return result
    finally:
        _SYNC_LOCK.release()


def storage_stats() -> dict:
    with db_connect() as conn:
        cur = conn.cursor()

        def count(sql):
            return int(cur.execute(sql).fetchone()[0])

        return {
            "products": count("SELECT COUNT(1) FROM products"),
            "categories": count("SELECT COUNT(1) FROM categories"),
            "customers": count("SELECT COUNT(1) FROM customers"),
            "staff": count("SELECT COUNT(1) FROM staff"),
            "pending_sales": count("SELECT COUNT(1) FROM pending_sales WHERE sync_status != 'synced'"),
            "total_sales": count("SELECT COUNT(1) FROM sales"),
            "queued_events": count("SELECT COUNT(1) FROM sync_queue WHERE status != 'sent'"),
        }


def get_status(cfg, probe: bool = True) -> dict:
    stats = storage_stats()
    return {
        "terminal_id": cfg.get("terminal_id") or None,
        "is_registered": is_registered(cfg),
        "is_online": is_online(cfg) if probe else None,
        "is_syncing": _SYNC_LOCK.locked(),
        "last_sync_at": get_last_sync_time(),
        "pending_sales": stats["pending_sales"],
        "pending_changes": stats["queued_events"],
        "has_offline_data": stats["products"] > 0,
    }


# Registration


def register_terminal(cfg, email: str, password: str, terminal_code: str, name: Optional[str] = None,
                      merchant_id: Optional[str] = None, reset_token: bool = False) -> dict:
    """Sign in as a merchant admin, bind this device to `terminal_code` and store its token."""
    try:
        login = post_json(api_url(cfg, "/auth/login"), {"email": email, "password": password})
    except HTTPError as ex:
        raise _http_error(ex) from None
    token = login.get("token")
    merchant_id = merchant_id or login.get("active_merchant_id")
    if not merchant_id:
        raise AgentError("account has no merchant; pass --merchant-id")
    admin_headers = {"Authorization": f"Bearer {token}", "X-Merchant-Id": str(merchant_id)}
    try:
        res = post_json(
            api_url(cfg, "/pos/terminals/register"),
            {
                "terminal_code": terminal_code,
                "name": name,
                "device_info": {"agent": "pos_terminal", "host": platform.node()},
                "reset_token": reset_token,
            },
            headers=admin_headers,
        )
    except HTTPError as ex:
        raise _http_error(ex) from None
    finally:
        try:
            post_json(api_url(cfg, "/auth/logout"), {}, headers=admin_headers)
        except OFFLINE_ERRORS as ex:
            _json_log("warning", "agent.register.logout_failed", error=str(ex))

    cfg["terminal_id"] = str(res["id"])
    cfg["terminal_token"] = res["token"]
    cfg["merchant_id"] = str(merchant_id)
    cfg["terminal_code"] = terminal_code
    save_config(cfg)
    # A new binding starts from a full snapshot.
    clear_sync_cursors()
    try:
        save_terminal_config(api_get(cfg, "/pos/terminal/config"))
    except OFFLINE_ERRORS as ex:
        _json_log("warning", "agent.register.config_fetch_failed", error=str(ex))
    _json_log("info", "agent.registered", terminal_id=cfg["terminal_id"], merchant_id=cfg["merchant_id"])
    return {"terminal_id": cfg["terminal_id"], "merchant_id": cfg["merchant_id"]}


# Local HTTP API


def json_response(handler, payload, status=200):
    body = json.dumps(payload, default=str).encode('utf-8')
    handler.send_response(status)
    handler.send_header('Content-Type', 'application/json')
    _maybe_send_cors_headers(handler)
    handler.end_headers()
    handler.wfile.write(body)


def text_response(handler, body, status=200, content_type='text/plain'):
    handler.send_response(status)
    handler.send_header('Content-Type', content_type)
    handler.end_headers()
    handler.wfile.write(body.encode('utf-8'))


def _origin_is_trusted(origin: str) -> bool:
    try:
        u = urlparse(origin)
    except ValueError:
        return False
    return u.scheme in {"http", "https"} and u.hostname in {"localhost", "127.0.0.1", "::1"}


def _reject_if_disallowed_origin(handler) -> bool:
    # Browsers on other sites must not drive the till through the loopback API.
    origin = (handler.headers.get("Origin") or "").strip()
    if not origin or _origin_is_trusted(origin):
        return False
    text_response(handler, "Forbidden", status=403)
    return True


def _maybe_send_cors_headers(handler):
    origin = (handler.headers.get("Origin") or "").strip()
    if not origin or not _origin_is_trusted(origin):
        return
    handler.send_header("Access-Control-Allow-Origin", origin)
    handler.send_header("Vary", "Origin")
    handler.send_header("Access-Control-Allow-Headers", "Content-Type")
    handler.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")


def _q(qs: dict, key: str, default=None):
    return (qs.get(key) or [default])[0]


class Handler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        _json_log("info", "agent.http", client=self.client_address[0] if self.client_address else None,
                  message=format % args)

    def do_OPTIONS(self):
        if _reject_if_disallowed_origin(self):
            return
        self.send_response(200)
        _maybe_send_cors_headers(self)
        self.end_headers()

    def do_GET(self):
        self._dispatch(self.handle_api_get)

    def do_POST(self):
        self._dispatch(self.handle_api_post)

    def _dispatch(self, fn):
        parsed = urlparse(self.path)
        if not parsed.path.startswith('/api/'):
            text_response(self, 'Not found', status=404)
            return
        if _reject_if_disallowed_origin(self):
            return
        try:
            fn(parsed, load_config())
        except AgentError as ex:
            json_response(self, {'error': ex.message}, status=ex.status)
        except ValueError as ex:
            json_response(self, {'error': str(ex)}, status=400)

    def read_json(self):
        length = int(self.headers.get('Content-Length', 0))
        if length == 0:
            return {}
        raw = self.rfile.read(length).decode('utf-8')
        return json.loads(raw)

    def handle_api_get(self, parsed, cfg):
        qs = parse_qs(parsed.query)
        path = parsed.path
        if path == '/api/health':
            json_response(self, {'ok': True})
        elif path == '/api/status':
            json_response(self, get_status(cfg))
        elif path == '/api/config':
            json_response(self, {'config': public_config(cfg), 'terminal': get_terminal_config()})
        elif path == '/api/products':
            json_response(self, get_products(cfg, _q(qs, 'category_id'), _q(qs, 'search', '')))
        elif path == '/api/categories':
            json_response(self, get_categories(cfg))
        elif path == '/api/staff':
            json_response(self, get_staff(cfg))
        elif path == '/api/customers':
            json_response(self, get_customers(cfg, _q(qs, 'query', ''), int(_q(qs, 'limit', '50'))))
        elif path == '/api/loyalty':
            json_response(self, get_loyalty(cfg, _q(qs, 'customer_id')))
        elif path == '/api/cart':
            json_response(self, load_cart())
        elif path == '/api/sales':
            json_response(self, get_sales(cfg, _q(qs, 'start'), _q(qs, 'end')))
        elif path == '/api/sales/pending':
            json_response(self, {'pending_sales': list_pending_sales()})
        elif path == '/api/reports/sales':
            start = _q(qs, 'start')
            end = _q(qs, 'end')
            if not start or not end:
                raise AgentError("start and end are required")
            json_response(self, sales_report(start, end))
        elif path == '/api/inventory/alerts':
            json_response(self, {'alerts': inventory_alerts()})
        elif path == '/api/inventory/log':
            json_response(self, {'log': list_inventory_log(_q(qs, 'product_id'))})
        elif path == '/api/outbox':
            json_response(self, {'outbox': list_queue()})
        elif path == '/api/session':
            json_response(self, {'session': current_session(cfg)})
        elif path == '/api/storage':
            json_response(self, storage_stats())
        elif path == '/api/sync/log':
            json_response(self, {'log': list_sync_log()})
        else:
            json_response(self, {'error': 'not found'}, status=404)

    def handle_api_post(self, parsed, cfg):
        path = parsed.path
        data = self.read_json()
        if path == '/api/sales':
            json_response(self, create_sale(cfg, data))
        elif path == '/api/cart':
            json_response(self, save_cart(data.get('items') or []))
        elif path == '/api/cart/clear':
            clear_cart()
            json_response(self, {'ok': True})
        elif path == '/api/staff':
            json_response(self, create_staff(cfg, data))
        elif path == '/api/staff/update':
            json_response(self, update_staff(cfg, data.get('id') or '', data.get('changes') or {}))
        elif path == '/api/staff/delete':
            json_response(self, delete_staff(cfg, data.get('id') or ''))
        elif path == '/api/customers':
            json_response(self, create_customer(cfg, data))
        elif path == '/api/customers/update':
            json_response(self, update_customer(cfg, data.get('id') or '', data.get('changes') or {}))
        elif path == '/api/loyalty/add':
            json_response(self, add_loyalty_points(cfg, data.get('customer_id') or '', data.get('points'), data.get('reason')))
        elif path == '/api/loyalty/redeem':
            json_response(self, redeem_loyalty_points(cfg, data.get('customer_id') or '', data.get('points'), data.get('reason')))
        elif path == '/api/inventory/adjust':
            json_response(self, adjust_inventory(cfg, data.get('product_id') or '', data.get('adjustment'), data.get('reason')))
        elif path == '/api/cash/movement':
            json_response(self, record_cash_movement(cfg, data.get('direction'), data.get('amount'), data.get('reason')))
        elif path == '/api/session/login':
            json_response(self, login_staff(cfg, data.get('pin'), data.get('staff_id'), data.get('staff_code')))
        elif path == '/api/session/touch':
            json_response(self, {'session': touch_session(cfg)})
        elif path == '/api/session/logout':
            logout_staff()
            json_response(self, {'ok': True})
        elif path == '/api/sync':
            json_response(self, sync_data(cfg))
        else:
            json_response(self, {'error': 'not found'}, status=404)


def main():
    global DB_PATH, CONFIG_PATH
    parser = argparse.ArgumentParser(description="Offline-first POS terminal agent")
    parser.add_argument("--db", default=os.environ.get("POS_DB_PATH", DB_PATH), help="SQLite cache path")
    parser.add_argument("--config", default=os.environ.get("POS_CONFIG_PATH", CONFIG_PATH), help="Config JSON path")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the local SQLite schema and exit")

    reg = sub.add_parser("register", help="Bind this device to a terminal code")
    reg.add_argument("--api", default=None, help="Backend base URL")
    reg.add_argument("--email", required=True)
    reg.add_argument("--password", default=None, help="Prompted when omitted")
    reg.add_argument("--merchant-id", default=None)
    reg.add_argument("--terminal-code", required=True)
    reg.add_argument("--name", default=None)
    reg.add_argument("--reset-token", action="store_true", help="Re-issue the token of an already registered terminal")

    sub.add_parser("sync", help="Push offline sales and changes, then pull fresh data")
    sub.add_parser("status", help="Print connectivity and queue status")

    serve = sub.add_parser("serve", help="Run the local HTTP API for the till UI")
    serve.add_argument(
        "--host",
        default=os.environ.get("POS_HOST", "127.0.0.1"),
        help="HTTP host to bind (default: 127.0.0.1)",
    )
    serve.add_argument("--port", type=int, default=int(os.environ.get("POS_PORT", "7070")))
    serve.add_argument("--sync-interval", type=float, default=float(os.environ.get("POS_SYNC_INTERVAL", "60")),
                       help="Seconds between background syncs; 0 disables")
    args = parser.parse_args()

    # Helpers read DB_PATH/CONFIG_PATH directly.
    DB_PATH = os.path.abspath(args.db)
    CONFIG_PATH = os.path.abspath(args.config)
    init_db()
    cfg = load_config()

    if args.command == "init":
        print("ok")
        return

    if args.command == "register":
        if args.api:
            cfg["api_base_url"] = args.api
        password = args.password or getpass.getpass("Password: ")
        try:
            res = register_terminal(cfg, args.email, password, args.terminal_code, args.name,
                                    args.merchant_id, args.reset_token)
        except AgentError as ex:
            print(f"error: {ex.message}", file=sys.stderr)
            sys.exit(1)
        print(json.dumps(res, indent=2))
        return

    if args.command == "sync":
        res = sync_data(cfg)
        print(json.dumps(res, indent=2, default=str))
        if not res.get("ok"):
            sys.exit(1)
        return

    if args.command == "status":
        print(json.dumps({**get_status(cfg), "storage": storage_stats()}, indent=2, default=str))
        return

    if args.sync_interval > 0:
        def _sync_loop():
            while True:
                time.sleep(args.sync_interval)
                try:
                    sync_data(load_config())
                except Exception as ex:
                    _json_log("error", "agent.sync.loop_error", error=str(ex))

        threading.Thread(target=_sync_loop, daemon=True).start()

    server = ThreadingHTTPServer((args.host, args.port), Handler)
    public_host = "localhost" if args.host in {"127.0.0.1", "localhost"} else args.host
    print(f"POS terminal agent running on http://{public_host}:{args.port}")
    server.serve_forever()


if __name__ == "__main__":
    main()
