"""
checkout: validate, then calculate, then (for real orders) commit.

calculate_final_total / preview_checkout never write anything and never
validate: they are what the cart screen shows. place_order re-validates the
whole checkout against fresh store state and commits the order, the wallet
debit, the first-order flags and the promo usage as one transaction.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

import referral_engine
import wallet_ledger
from errors import (
    IneligibleOffer,
    InsufficientFunds,
    InvalidState,
    MinimumOrderNotMet,
    MutuallyExclusive,
    NotFound,
    PromotionError,
)
from fee_engine import calculate_fees
from models import (
    ZERO,
    CheckoutFees,
    Money,
    OfferType,
    Order,
    OrderStatus,
    OrderTotalBreakdown,
    PolicyConfig,
    PromoCode,
    PromoCodeType,
    format_rupees,
    money,
    new_id,
    utcnow,
)
from offer_engine import (
    ONE_OFFER_PER_ORDER,
    apply_welcome_offer,
    validate_festival_promo,
    validate_referral_wallet,
    validate_welcome_offer,
)
from promo_engine import calculate_promo_discount, record_promo_usage
from stores import Repositories

logger = logging.getLogger(__name__)


class IncentiveSelection(BaseModel):
    """what the customer asked for at checkout. at most one may be set."""

    apply_welcome: bool = False
    promo_code: Optional[str] = None
    wallet_amount: Money = ZERO

    def requested(self) -> List[OfferType]:
        selected = []
        if self.apply_welcome:
            selected.append(OfferType.WELCOME)
        if self.promo_code is not None and self.promo_code.strip():
            selected.append(OfferType.FESTIVAL_PROMO)
        if self.wallet_amount > 0:
            selected.append(OfferType.REFERRAL_WALLET)
        return selected

    @property
    def offer_type(self) -> OfferType:
        selected = self.requested()
        if len(selected) > 1:
            raise MutuallyExclusive(ONE_OFFER_PER_ORDER)
        return selected[0] if selected else OfferType.NONE


@dataclass
class CheckoutValidation:
    errors: List[PromotionError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    promo: Optional[PromoCode] = None
    usable_wallet_amount: Decimal = ZERO

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise self.errors[0]


def validate_checkout(
    repos: Repositories,
    customer_id: str,
    subtotal,
    selection: IncentiveSelection,
    now: Optional[datetime] = None,
) -> CheckoutValidation:
    """
    end-to-end checkout validation:
      1) at most one incentive
      2) customer exists
      3) global minimum order value
      4) the single applicable incentive validator
      5) wallet amount <= usable amount (ExceedsLimit) and <= balance
    """
    result = CheckoutValidation()
    subtotal = money(subtotal)

    if len(selection.requested()) > 1:
        result.errors.append(MutuallyExclusive(ONE_OFFER_PER_ORDER))
        return result

    customer = repos.customers.get(customer_id)
    if customer is None:
        result.errors.append(NotFound(f"Customer {customer_id} not found"))
        return result

    policy = repos.policy.current()
    if subtotal < policy.min_order_value:
        result.errors.append(
            MinimumOrderNotMet(f"Minimum order value of {format_rupees(policy.min_order_value)} required")
        )

    offer_type = selection.offer_type

    if offer_type is OfferType.WELCOME:
        welcome = validate_welcome_offer(repos, customer_id, subtotal)
        if not welcome.eligible:
            result.errors.append(welcome.error)

    elif offer_type is OfferType.FESTIVAL_PROMO:
        promo_check = validate_festival_promo(
            repos,
            customer_id,
            selection.promo_code,
            subtotal,
            wallet_selected=selection.wallet_amount > 0,
            now=now,
        )
        if promo_check.eligible:
            result.promo = promo_check.promo
        else:
            result.errors.append(promo_check.error)

    elif offer_type is OfferType.REFERRAL_WALLET:
        requested = money(selection.wallet_amount)
        if requested > customer.wallet_balance:
            result.errors.append(
                InsufficientFunds(
                    f"Wallet amount ({format_rupees(requested)}) exceeds available balance "
                    f"({format_rupees(customer.wallet_balance)})"
                )
            )
        else:
            wallet = validate_referral_wallet(
                repos,
                customer_id,
                subtotal,
                wallet_balance=customer.wallet_balance,
                requested_amount=requested,
            )
            result.usable_wallet_amount = wallet.usable_amount
            if not wallet.eligible:
                result.errors.append(wallet.error)

    else:
        welcome = validate_welcome_offer(repos, customer_id, subtotal)
        if welcome.eligible:
            result.warnings.append(
                f"You can save {format_rupees(welcome.discount)} with the welcome offer"
            )

    return result


def calculate_final_total(
    subtotal,
    fees: CheckoutFees,
    selection: IncentiveSelection,
    policy: PolicyConfig,
    promo: Optional[PromoCode] = None,
) -> OrderTotalBreakdown:
    """
    fixed order, each step floors the running total at 0:
      1) subtotal + handling + delivery + rain + tax
      2) welcome discount
      3) promo discount
      4) wallet money (spent last so as little of it as possible is used)
    """
    subtotal = money(subtotal)
    offer_type = selection.offer_type

    current_total = subtotal + fees.handling_fee + fees.delivery_fee + fees.rain_fee + fees.tax_amount
    welcome_discount = ZERO
    promo_discount = ZERO
    wallet_used = ZERO

    if offer_type is OfferType.WELCOME:
        welcome_discount = apply_welcome_offer(current_total, policy)
        current_total = max(ZERO, current_total - welcome_discount)

    if offer_type is OfferType.FESTIVAL_PROMO:
        if promo is None:
            raise ValueError("A resolved promo code is required for FESTIVAL_PROMO.")
        promo_discount = calculate_promo_discount(current_total, promo)
        current_total = max(ZERO, current_total - promo_discount)

    if offer_type is OfferType.REFERRAL_WALLET:
        wallet_used = min(money(selection.wallet_amount), current_total)
        current_total = max(ZERO, current_total - wallet_used)

    return OrderTotalBreakdown(
        subtotal=subtotal,
        fees=fees,
        offer_type=offer_type,
        welcome_offer_discount=welcome_discount,
        promo_discount=promo_discount,
        wallet_amount_used=wallet_used,
        final_total=max(ZERO, current_total),
    )


def preview_checkout(
    repos: Repositories,
    subtotal,
    selection: IncentiveSelection,
) -> OrderTotalBreakdown:
    """cart preview: fees + calculation only, nothing validated or written."""
    promo = None
    if selection.offer_type is OfferType.FESTIVAL_PROMO:
        promo = repos.promos.get_by_code(selection.promo_code)
        if promo is None:
            raise NotFound("Invalid promo code")

    fees = calculate_fees(
        money(subtotal),
        repos.policy.fees(),
        free_delivery=promo is not None and promo.type is PromoCodeType.FREE_DELIVERY,
    )
    return calculate_final_total(subtotal, fees, selection, repos.policy.current(), promo)


def place_order(
    repos: Repositories,
    customer_id: str,
    subtotal,
    selection: IncentiveSelection,
    order_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    """
    validate and commit an order in one transaction:
      - lock the customer (orders by one customer serialize here)
      - re-validate the full checkout
      - compute fees and the breakdown
      - persist the order, debit the wallet, consume the first-order flags,
        record promo usage, advance a PENDING referral to ORDER_PLACED
    any failure rolls all of it back.
    """
    now = now or utcnow()
    order_id = order_id or new_id()
    subtotal = money(subtotal)

    with repos.transaction():
        customer = repos.customers.get_for_update(customer_id)
        if customer is None:
            raise NotFound(f"Customer {customer_id} not found")

        validation = validate_checkout(repos, customer_id, subtotal, selection, now=now)
        validation.raise_for_errors()

        promo = validation.promo
        fees = calculate_fees(
            subtotal,
            repos.policy.fees(),
            free_delivery=promo is not None and promo.type is PromoCodeType.FREE_DELIVERY,
        )
        breakdown = calculate_final_total(subtotal, fees, selection, repos.policy.current(), promo)

        order = repos.orders.save(
            Order.from_breakdown(
                order_id,
                customer_id,
                breakdown,
                promo_code_id=promo.id if promo else None,
                created_at=now,
            )
        )

        if breakdown.wallet_amount_used > 0:
            wallet_ledger.debit(
                repos,
                customer_id,
                breakdown.wallet_amount_used,
                description=f"Wallet used for order {order_id}",
                order_id=order_id,
                now=now,
            )

        if customer.first_order_placed_at is None:
            marked = repos.customers.mark_first_order(customer_id, now)
            if not marked and breakdown.offer_type is OfferType.WELCOME:
                raise IneligibleOffer("Welcome offer is only valid for your first order")

        if promo is not None:
            record_promo_usage(repos, customer_id, promo, order_id, breakdown.promo_discount, now=now)

        referral_engine.on_order_placed(repos, order, now=now)

    logger.info(
        "order %s placed by %s: offer=%s final_total=%s wallet=%s",
        order_id, customer_id, breakdown.offer_type.value, breakdown.final_total,
        breakdown.wallet_amount_used,
    )
    return order


def cancel_order(repos: Repositories, order_id: str, now: Optional[datetime] = None) -> Order:
    """
    PLACED -> CANCELLED. wallet money spent on the order goes back as a
    REFUND in the same transaction, and a referral waiting on this order is
    released for the next one. first-order flags are never reset.
    """
    now = now or utcnow()

    with repos.transaction():
        order = repos.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if order.status is not OrderStatus.PLACED:
            raise InvalidState(f"Order {order_id} is {order.status.value} and cannot be cancelled")

        if not repos.orders.set_status(order_id, OrderStatus.CANCELLED, expected={OrderStatus.PLACED}):
            raise InvalidState(f"Order {order_id} changed status concurrently")

        if order.wallet_amount_used > 0:
            wallet_ledger.refund(
                repos,
                order.user_id,
                order.wallet_amount_used,
                description=f"Refund for cancelled order {order_id}",
                order_id=order_id,
                now=now,
            )

        referral_engine.on_order_cancelled(repos, order)

    logger.info("order %s cancelled, refunded %s to wallet", order_id, order.wallet_amount_used)
    return order.model_copy(update={"status": OrderStatus.CANCELLED})


def mark_order_delivered(repos: Repositories, order_id: str, now: Optional[datetime] = None):
    """
    PLACED -> DELIVERED, then hand the order to the referral reward step.
    the status change commits on its own: a referral problem never un-delivers
    an order. redelivering an already delivered order only re-runs the
    (idempotent) reward step.

    returns (order, RewardOutcome).
    """
    now = now or utcnow()

    with repos.transaction():
        order = repos.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")

        if order.status is OrderStatus.PLACED:
            if not repos.orders.set_status(order_id, OrderStatus.DELIVERED,
                                           expected={OrderStatus.PLACED}, delivered_at=now):
                raise InvalidState(f"Order {order_id} changed status concurrently")
            order = order.model_copy(update={"status": OrderStatus.DELIVERED, "delivered_at": now})
        elif order.status is not OrderStatus.DELIVERED:
            raise InvalidState(f"Order {order_id} is {order.status.value} and cannot be delivered")

    outcome = referral_engine.on_order_delivered(repos, order, now=now)
    return order, outcome
