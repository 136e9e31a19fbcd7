"""
typed entities for the promotions engine.

every entity that comes out of a store goes through `from_row`, which
validates the whole record: a malformed required field raises a pydantic
ValidationError instead of silently defaulting. genuinely optional fields
are Optional[...] and default to None.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any, Mapping, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from errors import PromotionError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Money = Annotated[Decimal, Field(ge=0)]


def money(value) -> Decimal:
    """quantize to 2 dp. floats go through str() so 0.1 stays 0.10."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class _Record(BaseModel):
    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        return cls.model_validate(dict(row))


# ---------
# policy
# ---------

class AbuseCheckFailureMode(str, Enum):
    OPEN = "OPEN"      # lookup error -> allow the referral
    CLOSED = "CLOSED"  # lookup error -> reject the referral


class PolicyConfig(_Record):
    model_config = ConfigDict(frozen=True)

    # welcome offer
    welcome_offer_enabled: bool = True
    welcome_offer_amount: Money = Decimal("50.00")
    welcome_offer_min_order_value: Money = Decimal("199.00")

    # referral program
    referral_enabled: bool = True
    referral_reward_amount: Money = Decimal("20.00")
    max_referrals_per_user: int = Field(5, ge=0)
    referral_expiry_days: int = Field(60, ge=0)
    monthly_referral_cap: Money = Decimal("100.00")

    # wallet usage
    max_wallet_usage_per_order: Money = Decimal("30.00")
    min_order_value_for_wallet: Money = Decimal("199.00")

    # abuse prevention
    check_device_id: bool = True
    check_mobile_number: bool = True
    abuse_check_failure_mode: AbuseCheckFailureMode = AbuseCheckFailureMode.OPEN

    # checkout floor, applies regardless of incentive
    min_order_value: Money = Decimal("199.00")

    @model_validator(mode="after")
    def _caps_cover_amounts(self):
        if self.monthly_referral_cap < self.referral_reward_amount:
            raise ValueError(
                "monthly_referral_cap must be >= referral_reward_amount, "
                "otherwise no referral can ever be credited"
            )
        return self


class FeeConfig(_Record):
    model_config = ConfigDict(frozen=True)

    handling_fee_enabled: bool = True
    handling_fee_amount: Money = Decimal("10.00")
    handling_fee_free: bool = False

    delivery_fee_enabled: bool = True
    delivery_fee_amount: Money = Decimal("30.00")
    delivery_fee_free: bool = False
    minimum_order_for_free_delivery: Money = Decimal("500.00")

    tax_enabled: bool = True
    tax_percentage: Money = Decimal("5.00")

    rain_fee_enabled: bool = True
    rain_fee_amount: Money = Decimal("20.00")
    is_raining: bool = False


# ---------
# customers
# ---------

class Customer(_Record):
    id: str
    phone: str
    device_id: Optional[str] = None
    wallet_balance: Money = ZERO
    has_used_welcome_offer: bool = False
    first_order_placed_at: Optional[datetime] = None
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    referral_count: int = Field(0, ge=0)
    total_referral_earnings: Money = ZERO
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_first_order(self) -> bool:
        return not self.has_used_welcome_offer and self.first_order_placed_at is None


# ---------
# referrals
# ---------

class ReferralStatus(str, Enum):
    PENDING = "PENDING"            # referred user registered, no order yet
    ORDER_PLACED = "ORDER_PLACED"  # first order placed
    DELIVERED = "DELIVERED"        # first order delivered, reward eligible
    CREDITED = "CREDITED"          # reward written to the referrer's wallet
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"          # abuse or cap breach


TERMINAL_STATUSES = frozenset(
    {ReferralStatus.CREDITED, ReferralStatus.EXPIRED, ReferralStatus.REJECTED}
)
NON_TERMINAL_STATUSES = frozenset(set(ReferralStatus) - TERMINAL_STATUSES)


class Referral(_Record):
    id: str = Field(default_factory=new_id)
    referrer_user_id: str
    referred_user_id: str
    referred_user_phone: str
    referred_user_device_id: Optional[str] = None
    status: ReferralStatus = ReferralStatus.PENDING
    reward_amount: Money
    credited_at: Optional[datetime] = None
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.expires_at is not None and self.expires_at < now


# ---------
# wallet ledger
# ---------

class WalletTransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"


class WalletTransaction(_Record):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    type: WalletTransactionType
    amount: Decimal = Field(gt=0)
    balance_before: Money
    balance_after: Money
    description: str
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _balances_add_up(self):
        if self.type is WalletTransactionType.DEBIT:
            expected = self.balance_before - self.amount
        else:
            expected = self.balance_before + self.amount
        if self.balance_after != expected:
            raise ValueError(
                f"balance_after {self.balance_after} != {expected} for {self.type.value}"
            )
        return self


# ---------
# promo codes
# ---------

class PromoCodeType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_DELIVERY = "FREE_DELIVERY"


class PromoCode(_Record):
    id: str = Field(default_factory=new_id)
    code: str
    description: str = ""
    type: PromoCodeType
    discount_value: Money
    max_discount_cap: Optional[Money] = None
    min_order_value: Optional[Money] = None
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    usage_count: int = Field(0, ge=0)
    per_user_limit: Optional[int] = Field(None, ge=0)
    is_active: bool = True
    is_visible: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.expiry_date is not None and self.expiry_date < now

    def is_available(self, now: Optional[datetime] = None) -> bool:
        return (
            self.is_active
            and self.is_visible
            and not self.is_expired(now)
            and (self.usage_limit is None or self.usage_count < self.usage_limit)
        )

    @property
    def remaining_usage(self) -> Optional[int]:
        if self.usage_limit is None:
            return None
        return self.usage_limit - self.usage_count


class PromoCodeUsage(_Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    promo_code_id: str
    order_id: str
    discount_amount: Money
    used_at: datetime = Field(default_factory=utcnow)


# ---------
# checkout / orders
# ---------

class OfferType(str, Enum):
    NONE = "NONE"
    WELCOME = "WELCOME"
    REFERRAL_WALLET = "REFERRAL_WALLET"
    FESTIVAL_PROMO = "FESTIVAL_PROMO"


class CheckoutFees(BaseModel):
    model_config = ConfigDict(frozen=True)

    handling_fee: Money = ZERO
    delivery_fee: Money = ZERO
    rain_fee: Money = ZERO
    tax_amount: Money = ZERO

    @property
    def total(self) -> Decimal:
        return self.handling_fee + self.delivery_fee + self.rain_fee + self.tax_amount


class OrderTotalBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Money
    fees: CheckoutFees
    offer_type: OfferType = OfferType.NONE
    welcome_offer_discount: Money = ZERO
    promo_discount: Money = ZERO
    wallet_amount_used: Money = ZERO
    final_total: Money

    @property
    def total_savings(self) -> Decimal:
        return self.welcome_offer_discount + self.promo_discount + self.wallet_amount_used


class OrderStatus(str, Enum):
    PLACED = "PLACED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class Order(_Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    status: OrderStatus = OrderStatus.PLACED
    offer_type: OfferType = OfferType.NONE
    promo_code_id: Optional[str] = None
    subtotal: Money
    handling_fee: Money = ZERO
    delivery_fee: Money = ZERO
    rain_fee: Money = ZERO
    tax_amount: Money = ZERO
    welcome_offer_discount: Money = ZERO
    promo_discount: Money = ZERO
    wallet_amount_used: Money = ZERO
    final_total: Money
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_breakdown(cls, order_id: str, user_id: str, breakdown: OrderTotalBreakdown,
                       promo_code_id: Optional[str] = None,
                       created_at: Optional[datetime] = None) -> "Order":
        fees = breakdown.fees
        return cls(
            id=order_id,
            user_id=user_id,
            offer_type=breakdown.offer_type,
            promo_code_id=promo_code_id,
            subtotal=breakdown.subtotal,
            handling_fee=fees.handling_fee,
            delivery_fee=fees.delivery_fee,
            rain_fee=fees.rain_fee,
            tax_amount=fees.tax_amount,
            welcome_offer_discount=breakdown.welcome_offer_discount,
            promo_discount=breakdown.promo_discount,
            wallet_amount_used=breakdown.wallet_amount_used,
            final_total=breakdown.final_total,
            created_at=created_at or utcnow(),
        )


def format_rupees(value) -> str:
    value = Decimal(value)
    if value == value.to_integral_value():
        return f"₹{value:.0f}"
    return f"₹{value:.2f}"


@dataclass
class OfferValidationResult:
    """
    outcome of an incentive validator. business failures are returned, not
    raised: `reason` is user-facing text, `error` the typed failure.
    """

    eligible: bool
    discount: Decimal = ZERO
    usable_amount: Decimal = ZERO
    reason: Optional[str] = None
    error: Optional[PromotionError] = None
    promo: Optional[PromoCode] = None

    @classmethod
    def fail(cls, error: PromotionError, promo: Optional[PromoCode] = None) -> "OfferValidationResult":
        return cls(eligible=False, reason=error.message, error=error, promo=promo)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error
