from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from errors import IneligibleOffer
from models import (
    Customer,
    OfferValidationResult,
    PolicyConfig,
    PromoCode,
    PromoCodeType,
    Referral,
    ReferralStatus,
    WalletTransaction,
    WalletTransactionType,
    format_rupees,
    money,
)


def test_policy_defaults():
    policy = PolicyConfig()

    assert policy.welcome_offer_amount == Decimal("50.00")
    assert policy.welcome_offer_min_order_value == Decimal("199.00")
    assert policy.referral_reward_amount == Decimal("20.00")
    assert policy.max_referrals_per_user == 5
    assert policy.referral_expiry_days == 60
    assert policy.monthly_referral_cap == Decimal("100.00")
    assert policy.max_wallet_usage_per_order == Decimal("30.00")


def test_policy_rejects_cap_below_reward():
    """a monthly cap smaller than one reward could never be satisfied."""
    with pytest.raises(ValidationError):
        PolicyConfig(referral_reward_amount=Decimal("50"), monthly_referral_cap=Decimal("40"))


def test_policy_rejects_negative_money():
    with pytest.raises(ValidationError):
        PolicyConfig(welcome_offer_amount=Decimal("-1"))


def test_policy_decodes_from_document():
    """policy documents come back from the store with string decimals."""
    policy = PolicyConfig.from_row({"welcome_offer_amount": "75.00", "abuse_check_failure_mode": "CLOSED"})
    assert policy.welcome_offer_amount == Decimal("75.00")
    assert policy.abuse_check_failure_mode.value == "CLOSED"


def test_from_row_fails_loudly_on_malformed_required_field():
    with pytest.raises(ValidationError):
        Customer.from_row({"id": "c1", "phone": None})

    with pytest.raises(ValidationError):
        Referral.from_row({
            "id": "r1",
            "referrer_user_id": "a",
            "referred_user_id": "b",
            "referred_user_phone": "9800000000",
            "status": "SOMETHING_ELSE",
            "reward_amount": "20",
        })


def test_from_row_optional_fields_default_to_none():
    customer = Customer.from_row({"id": "c1", "phone": "9800000000"})
    assert customer.referral_code is None
    assert customer.first_order_placed_at is None
    assert customer.is_first_order


def test_wallet_transaction_balances_must_add_up():
    ok = WalletTransaction(
        user_id="u", type=WalletTransactionType.DEBIT, amount=Decimal("10"),
        balance_before=Decimal("30"), balance_after=Decimal("20"), description="x",
    )
    assert ok.balance_after == Decimal("20")

    with pytest.raises(ValidationError):
        WalletTransaction(
            user_id="u", type=WalletTransactionType.CREDIT, amount=Decimal("10"),
            balance_before=Decimal("30"), balance_after=Decimal("20"), description="x",
        )

    # a debit may never leave the balance negative
    with pytest.raises(ValidationError):
        WalletTransaction(
            user_id="u", type=WalletTransactionType.DEBIT, amount=Decimal("40"),
            balance_before=Decimal("30"), balance_after=Decimal("-10"), description="x",
        )


def test_wallet_transaction_amount_must_be_positive():
    with pytest.raises(ValidationError):
        WalletTransaction(
            user_id="u", type=WalletTransactionType.CREDIT, amount=Decimal("0"),
            balance_before=Decimal("0"), balance_after=Decimal("0"), description="x",
        )


def test_promo_availability(now):
    promo = PromoCode(code="DIWALI", type=PromoCodeType.FIXED_AMOUNT, discount_value=Decimal("40"),
                      usage_limit=2, usage_count=1, expiry_date=now + timedelta(days=1))
    assert promo.is_available(now)
    assert promo.remaining_usage == 1

    assert not promo.model_copy(update={"usage_count": 2}).is_available(now)
    assert not promo.model_copy(update={"is_active": False}).is_available(now)
    assert promo.is_expired(now + timedelta(days=2))


def test_referral_expiry(now):
    referral = Referral(
        referrer_user_id="a", referred_user_id="b", referred_user_phone="9800000000",
        reward_amount=Decimal("20"), created_at=now, expires_at=now + timedelta(days=60),
    )
    assert referral.status is ReferralStatus.PENDING
    assert not referral.is_expired(now)
    assert referral.is_expired(now + timedelta(days=61))
    assert not referral.is_terminal


def test_money_and_formatting():
    assert money(0.1) == Decimal("0.10")
    assert money("19.995") == Decimal("20.00")
    assert format_rupees(Decimal("199")) == "₹199"
    assert format_rupees(Decimal("12.50")) == "₹12.50"


def test_validation_result_fail_carries_reason():
    result = OfferValidationResult.fail(IneligibleOffer("Welcome offer is currently disabled"))

    assert not result.eligible
    assert result.reason == "Welcome offer is currently disabled"
    with pytest.raises(IneligibleOffer):
        result.raise_for_error()
