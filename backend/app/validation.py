from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
PaymentMethod = Annotated[
    Literal["cash", "mobile_money", "card", "qr", "credit", "split"],
    BeforeValidator(_to_lower_str),
]
TenderMethod = Annotated[Literal["cash", "mobile_money", "card", "qr", "credit"], BeforeValidator(_to_lower_str)]
PaymentStatus = Annotated[Literal["pending", "completed", "refunded", "partial_refund"], BeforeValidator(_to_lower_str)]
SaleStatus = Annotated[Literal["completed", "voided", "refunded"], BeforeValidator(_to_lower_str)]
DiscountType = Annotated[Literal["percentage", "fixed"], BeforeValidator(_to_lower_str)]
DiscountScope = Annotated[Literal["cart", "item", "category"], BeforeValidator(_to_lower_str)]
CashDirection = Annotated[Literal["in", "out"], BeforeValidator(_to_lower_str)]
RefundType = Annotated[Literal["full", "partial"], BeforeValidator(_to_lower_str)]
RefundMethod = Annotated[Literal["cash", "original", "store_credit"], BeforeValidator(_to_lower_str)]
StockChangeType = Annotated[Literal["restock", "adjustment", "damage"], BeforeValidator(_to_lower_str)]
StaffRole = Annotated[Literal["admin", "manager", "supervisor", "cashier"], BeforeValidator(_to_lower_str)]
KitchenStatusIn = Annotated[
    Literal["new", "preparing", "ready", "completed", "cancelled"],
    BeforeValidator(_to_lower_str),
]


# Discount codes are typed at the till; keep them case-insensitive and compact.
DiscountCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[A-Z0-9][A-Z0-9_-]*$"),
]

TerminalCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[A-Z0-9][A-Z0-9_-]*$"),
]
