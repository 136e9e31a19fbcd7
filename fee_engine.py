from decimal import Decimal, ROUND_HALF_UP

from models import CENT, ZERO, CheckoutFees, FeeConfig


def calculate_fees(subtotal, config: FeeConfig, free_delivery: bool = False) -> CheckoutFees:
    """
    subtotal: Decimal (cart value before fees)
    config: FeeConfig snapshot
    free_delivery: a FREE_DELIVERY promo is applied

    rules:
      - handling fee unless disabled or waived
      - delivery fee unless disabled/waived, free-delivery promo, or
        subtotal >= minimum_order_for_free_delivery
      - rain fee only while it is raining
      - tax on subtotal + handling + delivery + rain, rounded half-up
    """
    subtotal = Decimal(subtotal)

    handling = ZERO
    if config.handling_fee_enabled and not config.handling_fee_free:
        handling = config.handling_fee_amount

    delivery = ZERO
    if free_delivery:
        delivery = ZERO
    elif config.delivery_fee_enabled and not config.delivery_fee_free:
        if subtotal < config.minimum_order_for_free_delivery:
            delivery = config.delivery_fee_amount

    rain = ZERO
    if config.rain_fee_enabled and config.is_raining:
        rain = config.rain_fee_amount

    tax = ZERO
    if config.tax_enabled:
        tax_base = subtotal + handling + delivery + rain
        tax = (tax_base * config.tax_percentage / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)

    return CheckoutFees(
        handling_fee=handling,
        delivery_fee=delivery,
        rain_fee=rain,
        tax_amount=tax,
    )
