import logging
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Union

from errors import ExceedsLimit, IneligibleOffer, NotFound
from models import (
    CENT,
    ZERO,
    OfferValidationResult,
    PromoCode,
    PromoCodeType,
    PromoCodeUsage,
    format_rupees,
    money,
    utcnow,
)
from stores import Repositories

logger = logging.getLogger(__name__)


def check_promo_code(
    repos: Repositories,
    user_id: str,
    promo: Union[str, PromoCode, None],
    order_value,
    now: Optional[datetime] = None,
) -> OfferValidationResult:
    """
    a promo code's own eligibility rules, in the order the customer should
    hear about them:
      - code present and known
      - visible, not expired, active, under its usage limit
      - order meets the promo's minimum
      - customer under the per-user limit

    `promo` may be the raw code the customer typed or an already resolved
    PromoCode. on success `discount` holds the discount on `order_value`.
    """
    now = now or utcnow()
    order_value = money(order_value)

    if isinstance(promo, PromoCode):
        resolved = promo
    else:
        code = (promo or "").strip()
        if not code:
            return OfferValidationResult.fail(IneligibleOffer("Please enter a promo code"))
        resolved = repos.promos.get_by_code(code)
        if resolved is None:
            return OfferValidationResult.fail(NotFound("Invalid promo code"))

    if not resolved.is_visible:
        return OfferValidationResult.fail(
            IneligibleOffer("This promo code is not available"), promo=resolved
        )

    if not resolved.is_available(now):
        if resolved.is_expired(now):
            reason = "This promo code has expired"
        elif not resolved.is_active:
            reason = "This promo code is not active"
        else:
            reason = "This promo code has reached its usage limit"
        return OfferValidationResult.fail(IneligibleOffer(reason), promo=resolved)

    if resolved.min_order_value is not None and order_value < resolved.min_order_value:
        return OfferValidationResult.fail(
            IneligibleOffer(
                f"Minimum order value of {format_rupees(resolved.min_order_value)} required"
            ),
            promo=resolved,
        )

    if resolved.per_user_limit is not None:
        used = repos.promos.user_usage_count(resolved.id, user_id)
        if used >= resolved.per_user_limit:
            return OfferValidationResult.fail(
                IneligibleOffer("You have already used this promo code"), promo=resolved
            )

    return OfferValidationResult(
        eligible=True,
        discount=calculate_promo_discount(order_value, resolved),
        promo=resolved,
    )


def calculate_promo_discount(amount, promo: PromoCode) -> Decimal:
    """
    PERCENTAGE    -> amount * value / 100, capped by max_discount_cap, rounded down
    FIXED_AMOUNT  -> min(value, amount)
    FREE_DELIVERY -> 0 here; the delivery fee is zeroed by the fee engine
    """
    amount = Decimal(amount)
    if amount <= 0:
        return ZERO

    if promo.type is PromoCodeType.PERCENTAGE:
        discount = (amount * promo.discount_value / Decimal("100")).quantize(CENT, rounding=ROUND_DOWN)
        if promo.max_discount_cap is not None:
            discount = min(discount, promo.max_discount_cap)
        return min(discount, amount)

    if promo.type is PromoCodeType.FIXED_AMOUNT:
        return min(promo.discount_value, amount)

    return ZERO


def record_promo_usage(
    repos: Repositories,
    user_id: str,
    promo: PromoCode,
    order_id: str,
    discount_amount,
    now: Optional[datetime] = None,
) -> PromoCodeUsage:
    """
    record one use of `promo` for an order. must run inside the order's
    transaction; the store refuses the write once usage_limit is reached,
    which covers two customers racing for the last use.
    """
    usage = PromoCodeUsage(
        user_id=user_id,
        promo_code_id=promo.id,
        order_id=order_id,
        discount_amount=money(discount_amount),
        used_at=now or utcnow(),
    )
    if not repos.promos.record_usage(usage):
        raise ExceedsLimit("This promo code has reached its usage limit")

    logger.info("promo %s used by %s on order %s (discount=%s)",
                promo.code, user_id, order_id, usage.discount_amount)
    return usage
