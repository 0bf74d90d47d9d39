from datetime import date
from decimal import Decimal

import pytest

from errors import ValidationError
from schemas import PaymentRequest, SubscriptionIn, TemplateIn, validate


@pytest.mark.parametrize("raw", ["99999999999999999999", "not a date", "2025-02-30"])
def test_bad_payment_date_is_a_validation_error(raw):
    with pytest.raises(ValidationError, match="payment_date"):
        validate(PaymentRequest, {"subscription_id": 1, "amount": "10.00", "payment_date": raw})


def test_bad_start_date_is_a_validation_error():
    with pytest.raises(ValidationError, match="start_date"):
        validate(
            SubscriptionIn,
            {"client_id": 1, "type": "internet", "start_date": "99999999999999999999",
             "billing_cycle": 1, "monthly_amount": "10"},
        )


def test_loose_date_strings_accepted():
    req = validate(PaymentRequest, {"subscription_id": 1, "amount": "10", "payment_date": "March 3, 2025 14:00"})
    assert req.payment_date == date(2025, 3, 3)
    assert req.amount == Decimal("10.00")


def test_validate_passes_models_through():
    req = PaymentRequest(subscription_id=3, amount="5.5")
    assert validate(PaymentRequest, req) is req


def test_template_name_from_content():
    assert validate(TemplateIn, {"content": "short", "name": "  "}).name == "short..."
