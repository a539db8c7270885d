from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, Optional

from fastapi import HTTPException


Q2 = Decimal("0.01")
ZERO = Decimal("0")
# Split tenders are keyed in by hand; tolerate one cent of drift.
PAYMENT_TOLERANCE = Decimal("0.01")


def to_decimal(v) -> Decimal:
    if v is None or v == "":
        return ZERO
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def q2(v) -> Decimal:
    return to_decimal(v).quantize(Q2, rounding=ROUND_HALF_UP)


def item_discount_amount(unit_price, quantity, discount, discount_type: Optional[str] = None) -> Decimal:
    """
    Per-line discount. `percentage` discounts are a share of the line gross,
    anything else is a fixed amount. Clamped to [0, gross].
    """
    gross = to_decimal(unit_price) * to_decimal(quantity)
    d = to_decimal(discount)
    if d <= 0 or gross <= 0:
        return ZERO
    if (discount_type or "fixed") == "percentage":
        amount = gross * d / Decimal("100")
    else:
        amount = d
    return q2(min(amount, gross))


def line_total(unit_price, quantity, discount=ZERO) -> Decimal:
    gross = to_decimal(unit_price) * to_decimal(quantity)
    return q2(max(gross - to_decimal(discount), ZERO))


def calculate_discount(discount: dict, subtotal) -> Decimal:
    """Amount a discount code takes off a cart subtotal."""
    sub = to_decimal(subtotal)
    if sub <= 0:
        return ZERO
    min_purchase = to_decimal(discount.get("min_purchase"))
    if min_purchase > 0 and sub < min_purchase:
        return ZERO

    value = to_decimal(discount.get("value"))
    if discount.get("type") == "percentage":
        amount = sub * value / Decimal("100")
    else:
        amount = value

    max_discount = to_decimal(discount.get("max_discount"))
    if max_discount > 0 and amount > max_discount:
        amount = max_discount

    return q2(max(min(amount, sub), ZERO))


@dataclass
class CartLine:
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: Decimal
    discount: Decimal = ZERO
    discount_type: Optional[str] = None
    product_sku: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    notes: Optional[str] = None

    @property
    def gross(self) -> Decimal:
        return q2(self.unit_price * self.quantity)

    @property
    def discount_amount(self) -> Decimal:
        return item_discount_amount(self.unit_price, self.quantity, self.discount, self.discount_type)


@dataclass
class CartTotals:
    subtotal: Decimal
    item_discounts: Decimal
    code_discount: Decimal
    total_discount: Decimal
    tax_amount: Decimal
    total: Decimal
    item_count: Decimal
    lines: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "item_discounts": self.item_discounts,
            "code_discount": self.code_discount,
            "discount_amount": self.total_discount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total,
            "item_count": self.item_count,
        }


def cart_totals(lines: Iterable[CartLine], code_discount=ZERO, tax_rate=ZERO) -> CartTotals:
    """
    Totals for a cart. Subtotal is the gross of all lines; item discounts and
    the code discount come off it; tax is charged on what is left, using each
    line's own rate when it has one and `tax_rate` otherwise.
    """
    items = list(lines)
    subtotal = q2(sum((ln.gross for ln in items), ZERO))
    item_discounts = q2(sum((ln.discount_amount for ln in items), ZERO))
    code = q2(min(to_decimal(code_discount), max(subtotal - item_discounts, ZERO)))
    total_discount = item_discounts + code

    # Spread the code discount over lines pro rata so per-line tax is consistent.
    net_before_code = subtotal - item_discounts
    out_lines: list[dict] = []
    tax_total = ZERO
    for ln in items:
        line_net = ln.gross - ln.discount_amount
        share = (code * line_net / net_before_code) if net_before_code > 0 else ZERO
        rate = to_decimal(ln.tax_rate) if ln.tax_rate is not None else to_decimal(tax_rate)
        line_tax = q2(max(line_net - share, ZERO) * rate)
        tax_total += line_tax
        out_lines.append(
            {
                "product_id": ln.product_id,
                "product_name": ln.product_name,
                "product_sku": ln.product_sku,
                "quantity": ln.quantity,
                "unit_price": q2(ln.unit_price),
                "discount_amount": ln.discount_amount,
                "tax_amount": line_tax,
                "total_price": q2(line_net),
                "notes": ln.notes,
            }
        )

    tax_amount = q2(tax_total)
    total = q2(max(subtotal - total_discount, ZERO) + tax_amount)
    return CartTotals(
        subtotal=subtotal,
        item_discounts=item_discounts,
        code_discount=code,
        total_discount=q2(total_discount),
        tax_amount=tax_amount,
        total=total,
        item_count=sum((ln.quantity for ln in items), ZERO),
        lines=out_lines,
    )


def change_due(received, total) -> Decimal:
    return q2(max(to_decimal(received) - to_decimal(total), ZERO))


def validate_split_payments(payments: list[dict], total) -> Decimal:
    paid = q2(sum((to_decimal(p.get("amount")) for p in payments or []), ZERO))
    if any(to_decimal(p.get("amount")) <= 0 for p in payments or []):
        raise HTTPException(status_code=400, detail="payment amounts must be > 0")
    if (paid - to_decimal(total)).copy_abs() > PAYMENT_TOLERANCE:
        raise HTTPException(
            status_code=400,
            detail=f"payment total ({paid}) doesn't match sale total ({q2(total)})",
        )
    return paid


def cash_tendered(payment_method: str, total, payments: Optional[list[dict]] = None) -> Decimal:
    """Portion of a sale that landed in the cash drawer."""
    if payment_method == "cash":
        return q2(total)
    if payment_method == "split":
        return q2(sum((to_decimal(p.get("amount")) for p in payments or [] if p.get("method") == "cash"), ZERO))
    return ZERO


def document_number(prefix: str, day: date, seq: int, width: int = 4) -> str:
    return f"{prefix}{day.strftime('%Y%m%d')}-{str(int(seq)).zfill(width)}"


def loyalty_points_earned(amount, points_per_currency) -> int:
    ppc = to_decimal(points_per_currency)
    if ppc <= 0:
        return 0
    return int((to_decimal(amount) / ppc).to_integral_value(rounding=ROUND_FLOOR))


def loyalty_redeem_value(points, points_value) -> Decimal:
    # points_value is the money worth of 100 points.
    return q2(to_decimal(points) / Decimal("100") * to_decimal(points_value))


def ean13_barcode(product_id: str) -> str:
    """In-store EAN-13: prefix 200, nine digits taken from the id, check digit."""
    digits = "".join(ch for ch in str(product_id or "") if ch.isdigit())[:9].rjust(9, "0")
    base = "200" + digits
    total = sum(int(d) * (1 if i % 2 == 0 else 3) for i, d in enumerate(base))
    return base + str((10 - total % 10) % 10)
