import uuid

import pytest
from pydantic import BaseModel, ValidationError

from backend.app.routers.sales import SaleItemIn
from backend.app.validation import CashDirection, DiscountCode, PaymentMethod, StaffRole, TerminalCode


class _M(BaseModel):
    method: PaymentMethod
    direction: CashDirection
    role: StaffRole
    code: DiscountCode
    terminal: TerminalCode


def test_validation_types_normalize_case():
    m = _M(method=" Cash ", direction="IN", role="Manager", code=" save10 ", terminal="till-1")
    assert m.method == "cash"
    assert m.direction == "in"
    assert m.role == "manager"
    assert m.code == "SAVE10"
    assert m.terminal == "TILL-1"


def test_payment_method_rejects_unknown_values():
    with pytest.raises(ValidationError):
        _M(method="cash money", direction="in", role="cashier", code="X", terminal="T1")


def test_codes_reject_spaces_and_weird_chars():
    with pytest.raises(ValidationError):
        _M(method="card", direction="out", role="cashier", code="SAVE 10", terminal="T1")
    with pytest.raises(ValidationError):
        _M(method="card", direction="out", role="cashier", code="SAVE10", terminal="-T1")


@pytest.mark.parametrize("field", ["unit_price", "discount"])
def test_sale_lines_reject_negative_money(field):
    with pytest.raises(ValidationError):
        SaleItemIn(product_id=uuid.uuid4(), quantity="1", **{field: "-1"})
    assert SaleItemIn(product_id=uuid.uuid4(), quantity="1", unit_price="0").unit_price == 0
