from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from decimal import Decimal
import uuid

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission, get_current_user, require_terminal
from ..posting import apply_stock_change, lock_products, stock_target
from ..pricing import ean13_barcode, to_decimal
from ..validation import StockChangeType

router = APIRouter(prefix="/pos", tags=["catalog"])

PRODUCT_COLUMNS = """
    id, category_id, name, description, sku, barcode, price, cost_price, image_url,
    track_inventory, stock_quantity, low_stock_threshold, tax_rate, is_active, is_featured,
    created_at, updated_at
"""
CATEGORY_COLUMNS = "id, name, description, color, icon, sort_order, is_active, created_at, updated_at"

# Partial updates are built from these columns only.
_PRODUCT_FIELDS = (
    "category_id", "name", "description", "sku", "barcode", "price", "cost_price", "image_url",
    "track_inventory", "low_stock_threshold", "tax_rate", "is_active", "is_featured",
)
_CATEGORY_FIELDS = ("name", "description", "color", "icon", "sort_order", "is_active")


class CategoryIn(BaseModel):
    name: str
    description: Optional[str] = None
    color: str = "#3B82F6"
    icon: Optional[str] = None
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class ProductIn(BaseModel):
    name: str
    price: Decimal
    category_id: Optional[uuid.UUID] = None
    description: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    cost_price: Decimal = Decimal("0")
    image_url: Optional[str] = None
    track_inventory: bool = False
    stock_quantity: Decimal = Decimal("0")
    low_stock_threshold: Decimal = Decimal("10")
    tax_rate: Optional[Decimal] = None
    is_featured: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = None
    category_id: Optional[uuid.UUID] = None
    description: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    cost_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    track_inventory: Optional[bool] = None
    low_stock_threshold: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class StockUpdateIn(BaseModel):
    type: StockChangeType
    quantity: Decimal
    notes: Optional[str] = None


def build_update(data: BaseModel, allowed: tuple[str, ...]) -> tuple[list[str], list]:
    patch = data.model_dump(exclude_unset=True)
    sets: list[str] = []
    params: list = []
    for k in allowed:
        if k in patch:
            sets.append(f"{k} = %s")
            v = patch[k]
            params.append(str(v) if isinstance(v, uuid.UUID) else v)
    return sets, params


def stock_alert(product: dict) -> Optional[dict]:
    stock = to_decimal(product.get("stock_quantity"))
    threshold = to_decimal(product.get("low_stock_threshold"))
    if stock > threshold:
        return None
    return {
        "product_id": product["id"],
        "product_name": product["name"],
        "current_stock": stock,
        "threshold": threshold,
        "alert_type": "out_of_stock" if stock <= 0 else "low_stock",
    }


# Categories


@router.get("/categories", dependencies=[Depends(require_permission("pos:read"))])
def list_categories(
    include_inactive: bool = False,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    sql = f"SELECT {CATEGORY_COLUMNS} FROM pos_categories WHERE merchant_id = %s"
    if not include_inactive:
        sql += " AND is_active = true"
    sql += " ORDER BY sort_order, name"
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, (merchant_id,))
            return {"categories": cur.fetchall()}


@router.post("/categories", dependencies=[Depends(require_permission("inventory:write"))])
def create_category(data: CategoryIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO pos_categories (id, merchant_id, name, description, color, icon, sort_order)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                RETURNING {CATEGORY_COLUMNS}
                """,
                (merchant_id, name, data.description, data.color, data.icon, data.sort_order),
            )
            return {"category": cur.fetchone()}


@router.patch("/categories/{category_id}", dependencies=[Depends(require_permission("inventory:write"))])
def update_category(
    category_id: uuid.UUID,
    data: CategoryUpdate,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    sets, params = build_update(data, _CATEGORY_FIELDS)
    if not sets:
        raise HTTPException(status_code=400, detail="no fields to update")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE pos_categories
                SET {', '.join(sets)}, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING {CATEGORY_COLUMNS}
                """,
                params + [merchant_id, str(category_id)],
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="category not found")
            return {"category": row}


@router.delete("/categories/{category_id}", dependencies=[Depends(require_permission("inventory:write"))])
def delete_category(category_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_categories SET is_active = false, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (merchant_id, str(category_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="category not found")
    return {"ok": True}


# Products


@router.get("/products", dependencies=[Depends(require_permission("pos:read"))])
def list_products(
    q: Optional[str] = None,
    category_id: Optional[uuid.UUID] = None,
    include_inactive: bool = False,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    sql = f"SELECT {PRODUCT_COLUMNS} FROM pos_products WHERE merchant_id = %s"
    params: list = [merchant_id]
    if not include_inactive:
        sql += " AND is_active = true"
    if category_id:
        sql += " AND category_id = %s"
        params.append(str(category_id))
    if q and q.strip():
        needle = f"%{q.strip()}%"
        sql += " AND (name ILIKE %s OR sku ILIKE %s OR barcode ILIKE %s)"
        params.extend([needle, needle, needle])
    sql += " ORDER BY name"
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"products": cur.fetchall()}


@router.get("/products/by-barcode/{barcode}", dependencies=[Depends(require_permission("pos:read"))])
def get_product_by_barcode(barcode: str, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PRODUCT_COLUMNS}
                FROM pos_products
                WHERE merchant_id = %s AND barcode = %s AND is_active = true
                LIMIT 1
                """,
                (merchant_id, barcode.strip()),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="product not found")
            return {"product": row}


@router.get("/products/{product_id}", dependencies=[Depends(require_permission("pos:read"))])
def get_product(product_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {PRODUCT_COLUMNS} FROM pos_products WHERE merchant_id = %s AND id = %s",
                (merchant_id, str(product_id)),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="product not found")
            return {"product": row}


@router.post("/products", dependencies=[Depends(require_permission("inventory:write"))])
def create_product(data: ProductIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if data.price < 0 or data.cost_price < 0:
        raise HTTPException(status_code=400, detail="prices must be >= 0")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO pos_products
                  (id, merchant_id, category_id, name, description, sku, barcode, price, cost_price,
                   image_url, track_inventory, stock_quantity, low_stock_threshold, tax_rate, is_featured)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {PRODUCT_COLUMNS}
                """,
                (
                    merchant_id,
                    str(data.category_id) if data.category_id else None,
                    name,
                    data.description,
                    data.sku,
                    (data.barcode or "").strip() or None,
                    data.price,
                    data.cost_price,
                    data.image_url,
                    data.track_inventory,
                    data.stock_quantity,
                    data.low_stock_threshold,
                    data.tax_rate,
                    data.is_featured,
                ),
            )
            return {"product": cur.fetchone()}


@router.patch("/products/{product_id}", dependencies=[Depends(require_permission("inventory:write"))])
def update_product(
    product_id: uuid.UUID,
    data: ProductUpdate,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    sets, params = build_update(data, _PRODUCT_FIELDS)
    if not sets:
        raise HTTPException(status_code=400, detail="no fields to update")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE pos_products
                SET {', '.join(sets)}, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING {PRODUCT_COLUMNS}
                """,
                params + [merchant_id, str(product_id)],
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="product not found")
            return {"product": row}


@router.delete("/products/{product_id}", dependencies=[Depends(require_permission("inventory:write"))])
def delete_product(product_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_products SET is_active = false, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (merchant_id, str(product_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="product not found")
    return {"ok": True}


@router.post("/products/{product_id}/barcode", dependencies=[Depends(require_permission("inventory:write"))])
def assign_barcode(product_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    barcode = ean13_barcode(str(product_id))
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE pos_products SET barcode = %s, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING {PRODUCT_COLUMNS}
                """,
                (barcode, merchant_id, str(product_id)),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="product not found")
            return {"product": row}


# Inventory


@router.post("/products/{product_id}/stock", dependencies=[Depends(require_permission("inventory:write"))])
def update_stock(
    product_id: uuid.UUID,
    data: StockUpdateIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    if data.quantity < 0 or (data.type != "adjustment" and data.quantity == 0):
        raise HTTPException(status_code=400, detail="quantity must be > 0")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            products = lock_products(cur, merchant_id, [str(product_id)])
            p = products.get(str(product_id))
            if not p:
                raise HTTPException(status_code=404, detail="product not found")
            if not p.get("track_inventory"):
                raise HTTPException(status_code=400, detail="product does not track inventory")
            before = to_decimal(p["stock_quantity"])
            after = stock_target(before, data.type, data.quantity)
            if after < 0:
                raise HTTPException(status_code=400, detail="stock cannot go below zero")
            apply_stock_change(
                cur,
                merchant_id,
                p,
                after - before,
                data.type,
                reference_type="manual",
                notes=data.notes,
                user_id=user["user_id"],
                absolute=after,
            )
            return {"product_id": p["id"], "quantity_before": before, "quantity_after": after}


@router.get("/inventory/log", dependencies=[Depends(require_permission("pos:read"))])
def inventory_log(
    product_id: Optional[uuid.UUID] = None,
    limit: int = 100,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    sql = """
        SELECT l.id, l.product_id, p.name AS product_name, l.type, l.quantity_change,
               l.quantity_before, l.quantity_after, l.reference_type, l.reference_id, l.notes, l.created_at
        FROM pos_inventory_log l
        JOIN pos_products p ON p.id = l.product_id
        WHERE l.merchant_id = %s
    """
    params: list = [merchant_id]
    if product_id:
        sql += " AND l.product_id = %s"
        params.append(str(product_id))
    sql += " ORDER BY l.created_at DESC LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"entries": cur.fetchall()}


def _low_stock_rows(cur, merchant_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT id, name, sku, stock_quantity, low_stock_threshold
        FROM pos_products
        WHERE merchant_id = %s AND is_active = true AND track_inventory = true
          AND stock_quantity <= low_stock_threshold
        ORDER BY stock_quantity ASC, name
        """,
        (merchant_id,),
    )
    return cur.fetchall() or []


@router.get("/inventory/low-stock", dependencies=[Depends(require_permission("pos:read"))])
def low_stock(merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            return {"products": _low_stock_rows(cur, merchant_id)}


@router.get("/inventory/alerts", dependencies=[Depends(require_permission("pos:read"))])
def stock_alerts(merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            rows = _low_stock_rows(cur, merchant_id)
    alerts = [a for a in (stock_alert(r) for r in rows) if a]
    return {"alerts": alerts}


# Terminal catalog sync


@router.get("/terminal/catalog")
def terminal_catalog(terminal=Depends(require_terminal)):
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PRODUCT_COLUMNS}
                FROM pos_products
                WHERE merchant_id = %s AND is_active = true
                ORDER BY name
                """,
                (merchant_id,),
            )
            products = cur.fetchall()
            cur.execute(
                f"""
                SELECT {CATEGORY_COLUMNS}
                FROM pos_categories
                WHERE merchant_id = %s AND is_active = true
                ORDER BY sort_order, name
                """,
                (merchant_id,),
            )
            categories = cur.fetchall()
    return {"products": products, "categories": categories, "server_time": datetime.utcnow().isoformat()}


@router.get("/terminal/catalog/delta")
def terminal_catalog_delta(
    since: datetime,
    since_id: Optional[uuid.UUID] = None,
    limit: int = 5000,
    terminal=Depends(require_terminal),
):
    """
    Products and categories changed since the cursor. Deactivated rows are
    included so terminals can drop them from their cache.
    """
    if limit <= 0 or limit > 10000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 10000")
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {PRODUCT_COLUMNS}, updated_at AS changed_at
                FROM pos_products
                WHERE merchant_id = %s
                  AND (updated_at > %s OR (%s::uuid IS NOT NULL AND updated_at = %s AND id > %s))
                ORDER BY updated_at ASC, id ASC
                LIMIT %s
                """,
                (merchant_id, since, since_id, since, since_id, limit),
            )
            products = cur.fetchall() or []
            cur.execute(
                f"""
                SELECT {CATEGORY_COLUMNS}
                FROM pos_categories
                WHERE merchant_id = %s AND updated_at > %s
                ORDER BY updated_at ASC, id ASC
                """,
                (merchant_id, since),
            )
            categories = cur.fetchall() or []
    if products:
        last = products[-1]
        next_cursor = last["changed_at"].isoformat()
        next_cursor_id = str(last["id"])
    else:
        next_cursor = since.isoformat()
        next_cursor_id = str(since_id) if since_id else None
    return {
        "products": products,
        "categories": categories,
        "next_cursor": next_cursor,
        "next_cursor_id": next_cursor_id,
        "server_time": datetime.utcnow().isoformat(),
    }
