"""
incentive validators.

an order can carry at most one of: welcome offer, referral wallet money,
festival promo code. each validator answers "is this customer eligible and
for how much" and returns an OfferValidationResult; ordinary ineligibility is
never raised. StorageError from a store is NOT caught here: a validator that
cannot read its inputs grants nothing.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from errors import ExceedsLimit, IneligibleOffer, MutuallyExclusive, NotFound
from models import (
    ZERO,
    OfferValidationResult,
    PolicyConfig,
    PromoCode,
    format_rupees,
    money,
)
from promo_engine import check_promo_code
from stores import Repositories

logger = logging.getLogger(__name__)

ONE_OFFER_PER_ORDER = "Only one offer can be applied per order. Please choose the best deal."


def apply_welcome_offer(order_value, policy: PolicyConfig) -> Decimal:
    """fixed-amount discount, never more than the order itself."""
    return max(ZERO, min(policy.welcome_offer_amount, money(order_value)))


def calculate_usable_wallet_amount(wallet_balance, order_value, policy: PolicyConfig) -> Decimal:
    """min(balance, per-order cap, order value)."""
    return max(ZERO, min(money(wallet_balance), policy.max_wallet_usage_per_order, money(order_value)))


def validate_welcome_offer(repos: Repositories, customer_id: str, order_value) -> OfferValidationResult:
    """
    welcome offer rules:
      - feature enabled
      - first order: never used the offer, no first order recorded
      - order value >= configured minimum
    """
    policy = repos.policy.current()
    order_value = money(order_value)

    if not policy.welcome_offer_enabled:
        return OfferValidationResult.fail(IneligibleOffer("Welcome offer is currently disabled"))

    customer = repos.customers.get(customer_id)
    if customer is None:
        return OfferValidationResult.fail(NotFound(f"Customer {customer_id} not found"))

    if not customer.is_first_order:
        return OfferValidationResult.fail(
            IneligibleOffer("Welcome offer is only valid for your first order")
        )

    if order_value < policy.welcome_offer_min_order_value:
        return OfferValidationResult.fail(
            IneligibleOffer(
                f"Minimum order value of {format_rupees(policy.welcome_offer_min_order_value)} "
                f"required for welcome offer"
            )
        )

    return OfferValidationResult(eligible=True, discount=apply_welcome_offer(order_value, policy))


def validate_referral_wallet(
    repos: Repositories,
    customer_id: str,
    order_value,
    wallet_balance=None,
    requested_amount=None,
) -> OfferValidationResult:
    """
    referral wallet rules:
      - referral program enabled
      - balance > 0
      - order value >= minimum for wallet use
      - usable = min(balance, max per order, order value) must be > 0
      - a requested amount above `usable` is ExceedsLimit, never clamped

    `wallet_balance` defaults to the customer's stored balance.
    """
    policy = repos.policy.current()
    order_value = money(order_value)

    if not policy.referral_enabled:
        return OfferValidationResult.fail(IneligibleOffer("Referral program is currently disabled"))

    if wallet_balance is None:
        customer = repos.customers.get(customer_id)
        if customer is None:
            return OfferValidationResult.fail(NotFound(f"Customer {customer_id} not found"))
        wallet_balance = customer.wallet_balance
    wallet_balance = money(wallet_balance)

    if wallet_balance <= 0:
        return OfferValidationResult.fail(IneligibleOffer("No wallet balance available"))

    if order_value < policy.min_order_value_for_wallet:
        return OfferValidationResult.fail(
            IneligibleOffer(
                f"Minimum order value of {format_rupees(policy.min_order_value_for_wallet)} "
                f"required to use wallet"
            )
        )

    usable = calculate_usable_wallet_amount(wallet_balance, order_value, policy)
    if usable <= 0:
        return OfferValidationResult.fail(IneligibleOffer("Wallet cannot be used for this order"))

    if requested_amount is not None:
        requested = money(requested_amount)
        if requested > usable:
            logger.warning(
                "wallet request over limit: customer=%s requested=%s usable=%s",
                customer_id, requested, usable,
            )
            result = OfferValidationResult.fail(
                ExceedsLimit(
                    f"Wallet amount ({format_rupees(requested)}) exceeds maximum usable "
                    f"amount ({format_rupees(usable)})"
                )
            )
            result.usable_amount = usable
            return result

    return OfferValidationResult(eligible=True, usable_amount=usable)


def validate_festival_promo(
    repos: Repositories,
    customer_id: str,
    promo: Union[str, PromoCode, None],
    order_value,
    wallet_selected: bool = False,
    now: Optional[datetime] = None,
) -> OfferValidationResult:
    """
    mutual-exclusivity gate for promo codes:
      - wallet already selected -> MutuallyExclusive
      - customer eligible for the welcome offer -> MutuallyExclusive
        (the welcome discount wins; codes don't stack on top of it)
      - otherwise the promo's own usage rules decide
    """
    if wallet_selected:
        return OfferValidationResult.fail(MutuallyExclusive(ONE_OFFER_PER_ORDER))

    welcome = validate_welcome_offer(repos, customer_id, order_value)
    if welcome.eligible:
        return OfferValidationResult.fail(MutuallyExclusive(ONE_OFFER_PER_ORDER))

    return check_promo_code(repos, customer_id, promo, order_value, now=now)
