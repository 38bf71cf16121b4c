from decimal import Decimal

import pytest

from payment_service.exceptions import ValidationError
from payment_service.fees import processing_fee, to_money


@pytest.mark.parametrize(
    "amount, fee",
    [
        ("100.00", "3.20"),
        ("250.00", "7.55"),
        ("0.00", "0.30"),
        ("10.50", "0.60"),
        # 0.029 * 15.00 + 0.30 = 0.735 rounds half up
        ("15.00", "0.74"),
    ],
)
def test_processing_fee(amount, fee):
    assert processing_fee(Decimal(amount)) == Decimal(fee)


def test_processing_fee_accepts_floats_without_drift():
    assert processing_fee(13.13) == Decimal("0.68")


def test_to_money_rejects_sub_cent_precision():
    with pytest.raises(ValidationError):
        to_money("10.005")


@pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", True, None])
def test_to_money_rejects_garbage(value):
    with pytest.raises(ValidationError):
        to_money(value)


def test_to_money_normalizes_scale():
    assert str(to_money(5)) == "5.00"
    assert str(to_money("7.5")) == "7.50"
