from datetime import timedelta
from decimal import Decimal

import pytest

from errors import ExceedsLimit, IneligibleOffer, NotFound
from models import PromoCode, PromoCodeType
from promo_engine import calculate_promo_discount, check_promo_code, record_promo_usage


def _promo(kind, value, **fields):
    return PromoCode(code="TEST", type=kind, discount_value=Decimal(value), **fields)


def test_percentage_discount_rounds_down():
    """10% of 123.45 = 12.345 -> 12.34, never over-discount."""
    promo = _promo(PromoCodeType.PERCENTAGE, "10")
    assert calculate_promo_discount(Decimal("123.45"), promo) == Decimal("12.34")


def test_percentage_discount_respects_cap():
    promo = _promo(PromoCodeType.PERCENTAGE, "20", max_discount_cap=Decimal("50"))
    assert calculate_promo_discount(Decimal("1000"), promo) == Decimal("50")
    assert calculate_promo_discount(Decimal("100"), promo) == Decimal("20.00")


def test_fixed_discount_never_exceeds_amount():
    promo = _promo(PromoCodeType.FIXED_AMOUNT, "100")
    assert calculate_promo_discount(Decimal("60"), promo) == Decimal("60")
    assert calculate_promo_discount(Decimal("0"), promo) == Decimal("0")


def test_free_delivery_contributes_nothing_here():
    promo = _promo(PromoCodeType.FREE_DELIVERY, "0")
    assert calculate_promo_discount(Decimal("300"), promo) == Decimal("0")


def test_code_lookup_is_case_insensitive(repos, add_customer, add_promo):
    add_customer(repos, "u1")
    add_promo(repos, "DIWALI10")

    result = check_promo_code(repos, "u1", "  diwali10 ", Decimal("300"))
    assert result.eligible
    assert result.discount == Decimal("30.00")
    assert result.promo.code == "DIWALI10"


def test_blank_and_unknown_codes(repos, add_customer):
    add_customer(repos, "u1")

    blank = check_promo_code(repos, "u1", "   ", Decimal("300"))
    assert not blank.eligible
    assert blank.reason == "Please enter a promo code"

    unknown = check_promo_code(repos, "u1", "NOPE", Decimal("300"))
    assert not unknown.eligible
    assert isinstance(unknown.error, NotFound)
    assert unknown.reason == "Invalid promo code"


@pytest.mark.parametrize(
    "fields, reason",
    [
        ({"is_visible": False}, "This promo code is not available"),
        ({"is_active": False}, "This promo code is not active"),
        ({"usage_limit": 3, "usage_count": 3}, "This promo code has reached its usage limit"),
        ({"min_order_value": Decimal("499")}, "Minimum order value of ₹499 required"),
    ],
)
def test_promo_rules(repos, add_customer, add_promo, fields, reason):
    add_customer(repos, "u1")
    add_promo(repos, "FEST", **fields)

    result = check_promo_code(repos, "u1", "FEST", Decimal("300"))
    assert not result.eligible
    assert isinstance(result.error, IneligibleOffer)
    assert result.reason == reason


def test_expired_promo(repos, add_customer, add_promo, now):
    add_customer(repos, "u1")
    add_promo(repos, "OLD", expiry_date=now - timedelta(days=1))

    result = check_promo_code(repos, "u1", "OLD", Decimal("300"), now=now)
    assert result.reason == "This promo code has expired"


def test_per_user_limit(repos, add_customer, add_promo, now):
    add_customer(repos, "u1")
    add_customer(repos, "u2")
    promo = add_promo(repos, "ONCE", per_user_limit=1)

    record_promo_usage(repos, "u1", promo, "order-1", Decimal("30"), now=now)

    again = check_promo_code(repos, "u1", "ONCE", Decimal("300"), now=now)
    assert not again.eligible
    assert again.reason == "You have already used this promo code"

    # other customers are unaffected
    assert check_promo_code(repos, "u2", "ONCE", Decimal("300"), now=now).eligible


def test_record_usage_refuses_past_limit(repos, add_customer, add_promo, now):
    add_customer(repos, "u1")
    promo = add_promo(repos, "LAST", usage_limit=1)

    record_promo_usage(repos, "u1", promo, "order-1", Decimal("10"), now=now)
    assert repos.promos.get(promo.id).usage_count == 1

    with pytest.raises(ExceedsLimit):
        record_promo_usage(repos, "u1", promo, "order-2", Decimal("10"), now=now)
    assert repos.promos.get(promo.id).usage_count == 1
