from decimal import Decimal

import pytest

from conftest import d
from portfolio2pit38 import ValidationError, parse_transaction


def payload(**overrides):
    base = {"symbol": "aapl", "date": "2023-01-01", "kind": "buy", "quantity": "10", "price": "150.25"}
    base.update(overrides)
    return {k: v for k, v in base.items() if v is not None}


def test_parses_canonical_payload():
    t = parse_transaction(payload(commission="4.95"))
    assert t.symbol == "AAPL"
    assert t.date == d("2023-01-01")
    assert t.kind == "buy"
    assert t.quantity == Decimal("10")
    assert t.price_per_unit == Decimal("150.25")
    assert t.commission == Decimal("4.95")


def test_commission_optional():
    assert parse_transaction(payload()).commission == 0


def test_numbers_keep_decimal_precision():
    t = parse_transaction(payload(quantity=0.1, price=0.2))
    assert t.quantity == Decimal("0.1")
    assert t.price_per_unit == Decimal("0.2")


@pytest.mark.parametrize("field", ["symbol", "date", "kind", "quantity", "price"])
def test_missing_field(field):
    with pytest.raises(ValidationError, match=field):
        parse_transaction(payload(**{field: None}))


@pytest.mark.parametrize(
    "field,value",
    [
        ("date", "01/02/2023"),
        ("kind", "dividend"),
        ("quantity", "-1"),
        ("quantity", "ten"),
        ("price", "NaN"),
        ("price", True),
        ("commission", "-0.01"),
    ],
)
def test_bad_values(field, value):
    with pytest.raises(ValidationError, match=field):
        parse_transaction(payload(**{field: value}))


def test_payload_must_be_mapping():
    with pytest.raises(ValidationError, match="object"):
        parse_transaction(["AAPL", "buy"])


def test_validation_error_is_value_error():
    with pytest.raises(ValueError):
        parse_transaction({})
