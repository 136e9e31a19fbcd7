"""
referral lifecycle.

    PENDING -> ORDER_PLACED -> DELIVERED -> CREDITED
       |             |              |
       +-------------+--------------+----> EXPIRED | REJECTED

a referral is created when a referred user registers with a code, advanced
by the referred user's first order being placed and delivered, and finally
credited (or rejected / expired) by the reward step. terminal referrals are
kept for audit and never change again.

every transition is a conditional write keyed on the status we read, under
the referral row lock, so two deliveries of the same webhook cannot both
reach CREDITED.
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import wallet_ledger
from config import get_settings
from errors import (
    ConcurrentUpdate,
    IneligibleOffer,
    InvalidState,
    NotFound,
    StorageError,
)
from models import (
    AbuseCheckFailureMode,
    NON_TERMINAL_STATUSES,
    Order,
    OrderStatus,
    PolicyConfig,
    Referral,
    ReferralStatus,
    utcnow,
)
from stores import Repositories

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ReferralStatus.PENDING: {
        ReferralStatus.ORDER_PLACED, ReferralStatus.EXPIRED, ReferralStatus.REJECTED,
    },
    ReferralStatus.ORDER_PLACED: {
        ReferralStatus.DELIVERED, ReferralStatus.CREDITED,
        ReferralStatus.EXPIRED, ReferralStatus.REJECTED,
    },
    ReferralStatus.DELIVERED: {
        ReferralStatus.CREDITED, ReferralStatus.EXPIRED, ReferralStatus.REJECTED,
    },
    ReferralStatus.CREDITED: set(),
    ReferralStatus.EXPIRED: set(),
    ReferralStatus.REJECTED: set(),
}

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 10


class RewardStatus(str, Enum):
    CREDITED = "credited"
    NOOP = "noop"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass
class RewardOutcome:
    status: RewardStatus
    referral_id: Optional[str] = None
    reason: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class AbuseCheckResult:
    allowed: bool
    reason: Optional[str] = None
    degraded: bool = False  # decided by failure mode, not by a lookup


def _mask(phone: Optional[str]) -> str:
    if not phone:
        return "-"
    return "*" * max(0, len(phone) - 4) + phone[-4:]


# ---------
# state machine
# ---------

def can_transition(current: ReferralStatus, target: ReferralStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(repos: Repositories, referral: Referral, target: ReferralStatus, **extra) -> Referral:
    """
    move `referral` to `target`. the write only lands if the stored status
    is still the one we read; otherwise someone else moved it first.
    """
    if not can_transition(referral.status, target):
        raise InvalidState(
            f"Referral {referral.id} cannot move from {referral.status.value} to {target.value}"
        )

    if not repos.referrals.set_status(referral.id, target, expected={referral.status}, **extra):
        raise ConcurrentUpdate(f"Referral {referral.id} changed status concurrently")

    if target in (ReferralStatus.REJECTED, ReferralStatus.EXPIRED):
        logger.warning("referral %s: %s -> %s", referral.id, referral.status.value, target.value)
    else:
        logger.info("referral %s: %s -> %s", referral.id, referral.status.value, target.value)

    return referral.model_copy(update={"status": target, **extra})


# ---------
# registration
# ---------

def get_or_generate_referral_code(repos: Repositories, user_id: str) -> str:
    """
    return the user's existing referral_code, or generate a unique one,
    persist it, and return it.
    """
    customer = repos.customers.get(user_id)
    if customer is None:
        raise NotFound(f"Customer {user_id} not found")
    if customer.referral_code:
        return customer.referral_code

    settings = get_settings()
    for _ in range(MAX_CODE_ATTEMPTS):
        candidate = settings.REFERRAL_CODE_PREFIX + "".join(
            secrets.choice(CODE_ALPHABET) for _ in range(settings.REFERRAL_CODE_LENGTH)
        )
        if repos.customers.set_referral_code(user_id, candidate):
            logger.info("generated referral code for %s", user_id)
            return candidate

        # collision, or a concurrent request stored a code first
        current = repos.customers.get(user_id)
        if current is not None and current.referral_code:
            return current.referral_code

    raise StorageError(f"Could not allocate a unique referral code for {user_id}")


def register_referral(
    repos: Repositories,
    referred_user_id: str,
    referral_code: str,
    device_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Referral:
    """
    record that the owner of `referral_code` referred `referred_user_id`.

    rules:
      - referral program enabled
      - code resolves to a customer
      - nobody refers themselves
      - a user has at most one referrer, and only before their first order
    the reward amount and expiry are fixed now, from the current policy.
    """
    now = now or utcnow()
    policy = repos.policy.current()
    if not policy.referral_enabled:
        raise IneligibleOffer("Referral program is currently disabled")

    code = (referral_code or "").strip()
    if not code:
        raise IneligibleOffer("Please enter a referral code")

    with repos.transaction():
        referrer = repos.customers.find_by_referral_code(code)
        if referrer is None:
            raise NotFound(f"No user found with referral_code={code}")

        referred = repos.customers.get_for_update(referred_user_id)
        if referred is None:
            raise NotFound(f"Customer {referred_user_id} not found")

        if referrer.id == referred.id:
            raise IneligibleOffer("User cannot refer themselves.")

        existing = repos.referrals.find_by_referred_user(referred.id)
        if referred.referred_by is not None or existing is not None:
            raise IneligibleOffer(
                f"User {referred.id} already has a referrer "
                f"({referred.referred_by or existing.referrer_user_id})."
            )

        if not referred.is_first_order:
            raise IneligibleOffer("Referral codes can only be applied before your first order")

        expires_at = None
        if policy.referral_expiry_days > 0:
            expires_at = now + timedelta(days=policy.referral_expiry_days)

        referral = repos.referrals.create(
            Referral(
                referrer_user_id=referrer.id,
                referred_user_id=referred.id,
                referred_user_phone=referred.phone,
                referred_user_device_id=device_id or referred.device_id,
                reward_amount=policy.referral_reward_amount,
                created_at=now,
                expires_at=expires_at,
            )
        )

        if not repos.customers.set_referred_by(referred.id, referrer.id):
            raise ConcurrentUpdate(f"Referrer for {referred.id} was set concurrently")

    logger.info("referral %s registered: %s referred %s", referral.id, referrer.id, referred.id)
    return referral


# ---------
# abuse prevention
# ---------

def check_abuse_prevention(
    repos: Repositories,
    referrer_user_id: str,
    referred_phone: str,
    device_id: Optional[str],
    referral_id: Optional[str] = None,
    created_before: Optional[datetime] = None,
    policy: Optional[PolicyConfig] = None,
) -> AbuseCheckResult:
    """
    rejects:
      - self-referral: the referred phone (or device) belongs to the referrer
      - duplicates: an earlier referral (created before `created_before`)
        already used this phone or device id

    a StorageError during these lookups is decided by
    policy.abuse_check_failure_mode: OPEN allows the referral, CLOSED rejects
    it. every other store error in the engine fails closed.
    """
    policy = policy or repos.policy.current()

    try:
        if policy.check_mobile_number:
            owner = repos.customers.find_by_phone(referred_phone)
            if owner is not None and owner.id == referrer_user_id:
                return AbuseCheckResult(allowed=False, reason="Cannot refer yourself")

        if policy.check_device_id:
            if device_id:
                referrer = repos.customers.get(referrer_user_id)
                if referrer is not None and referrer.device_id == device_id:
                    return AbuseCheckResult(allowed=False, reason="Cannot refer yourself")

            if repos.referrals.find_duplicate(
                referred_phone, device_id, exclude_id=referral_id, created_before=created_before,
            ):
                return AbuseCheckResult(
                    allowed=False,
                    reason="Duplicate referral detected (same device or phone number)",
                )
    except StorageError as e:
        if policy.abuse_check_failure_mode is AbuseCheckFailureMode.OPEN:
            logger.warning(
                "abuse check lookup failed for referrer=%s phone=%s, allowing (fail open): %s",
                referrer_user_id, _mask(referred_phone), e,
            )
            return AbuseCheckResult(allowed=True, degraded=True)

        logger.warning(
            "abuse check lookup failed for referrer=%s phone=%s, rejecting (fail closed): %s",
            referrer_user_id, _mask(referred_phone), e,
        )
        return AbuseCheckResult(
            allowed=False,
            reason="Abuse check unavailable",
            degraded=True,
        )

    return AbuseCheckResult(allowed=True)


# ---------
# order events
# ---------

def on_order_placed(repos: Repositories, order: Order, now: Optional[datetime] = None) -> Optional[Referral]:
    """
    PENDING -> ORDER_PLACED for the referred user's first order (stamping
    the order id). an already-expired referral goes to EXPIRED instead.
    an ORDER_PLACED referral whose order was cancelled is re-stamped with
    this order. anything else is left alone.
    """
    now = now or utcnow()
    referral = repos.referrals.find_by_referred_user(order.user_id)
    if referral is None:
        return None

    with repos.transaction():
        referral = repos.referrals.get_for_update(referral.id)
        # an un-stamped ORDER_PLACED referral lost its qualifying order to a cancel
        restamp = referral.status is ReferralStatus.ORDER_PLACED and referral.order_id is None
        if referral.status is not ReferralStatus.PENDING and not restamp:
            logger.debug("referral %s is %s, order %s does not advance it",
                         referral.id, referral.status.value, order.id)
            return referral

        if referral.is_expired(now):
            return transition(repos, referral, ReferralStatus.EXPIRED)

        if restamp:
            return _stamp_order(repos, referral, order.id)
        return transition(repos, referral, ReferralStatus.ORDER_PLACED, order_id=order.id)


def on_order_cancelled(repos: Repositories, order: Order) -> Optional[Referral]:
    """
    release the referral from a cancelled qualifying order. the referral
    stays ORDER_PLACED with no order id, so the customer's next placed
    order becomes the qualifying one.
    """
    referral = repos.referrals.find_by_referred_user(order.user_id)
    if referral is None:
        return None

    with repos.transaction():
        referral = repos.referrals.get_for_update(referral.id)
        if referral.status is not ReferralStatus.ORDER_PLACED or referral.order_id != order.id:
            return referral
        return _stamp_order(repos, referral, None)


def _stamp_order(repos: Repositories, referral: Referral, order_id: Optional[str]) -> Referral:
    if not repos.referrals.set_status(
        referral.id, ReferralStatus.ORDER_PLACED,
        expected={ReferralStatus.ORDER_PLACED}, order_id=order_id,
    ):
        raise ConcurrentUpdate(f"Referral {referral.id} changed status concurrently")

    logger.info("referral %s qualifying order: %s -> %s", referral.id, referral.order_id, order_id)
    return referral.model_copy(update={"order_id": order_id})


def on_order_delivered(repos: Repositories, order: Order, now: Optional[datetime] = None) -> RewardOutcome:
    """
    entry point for the order-delivered event. idempotent: redelivering
    the same event after the reward was credited is a no-op.
    """
    if order.status is not OrderStatus.DELIVERED:
        raise InvalidState(f"Order {order.id} is {order.status.value}, not DELIVERED")

    now = now or utcnow()
    referral = repos.referrals.find_by_referred_user(order.user_id)
    if referral is None:
        logger.debug("no referral for user %s, nothing to reward", order.user_id)
        return RewardOutcome(RewardStatus.NOOP, reason="No referral for this user")

    with repos.transaction():
        referral = repos.referrals.get_for_update(referral.id)
        if (
            referral.status is ReferralStatus.ORDER_PLACED
            and referral.order_id in (None, order.id)
        ):
            referral = transition(repos, referral, ReferralStatus.DELIVERED)
        return _process_reward(repos, referral, order, now)


def process_referral_reward(repos: Repositories, order: Order, now: Optional[datetime] = None) -> RewardOutcome:
    """reward step on its own, e.g. to retry after a storage failure."""
    now = now or utcnow()
    referral = repos.referrals.find_by_referred_user(order.user_id)
    if referral is None:
        return RewardOutcome(RewardStatus.NOOP, reason="No referral for this user")

    with repos.transaction():
        referral = repos.referrals.get_for_update(referral.id)
        return _process_reward(repos, referral, order, now)


def _process_reward(repos: Repositories, referral: Referral, order: Order, now: datetime) -> RewardOutcome:
    """
    must run inside a transaction holding the referral row lock.

    order of checks:
      1) already CREDITED                    -> no-op
      2) order is not the qualifying order   -> no-op
      3) already REJECTED / EXPIRED          -> no-op
      4) status must be ORDER_PLACED or DELIVERED
      5) abuse prevention                    -> REJECTED
      6) referrer's referral limit           -> REJECTED
      7) referrer's monthly cap              -> REJECTED
      8) expiry                              -> EXPIRED
      9) credit wallet, CREDITED, bump referrer counters
    """
    if referral.status is ReferralStatus.CREDITED:
        logger.debug("referral %s already credited", referral.id)
        return RewardOutcome(RewardStatus.NOOP, referral.id, "Referral reward already credited")

    if referral.order_id is not None and referral.order_id != order.id:
        logger.debug("order %s is not the qualifying order %s of referral %s",
                     order.id, referral.order_id, referral.id)
        return RewardOutcome(RewardStatus.NOOP, referral.id, "Order is not the referral's first order")

    if referral.is_terminal:
        logger.debug("referral %s is already %s", referral.id, referral.status.value)
        return RewardOutcome(
            RewardStatus.NOOP, referral.id, f"Referral is already {referral.status.value}"
        )

    if referral.status not in (ReferralStatus.ORDER_PLACED, ReferralStatus.DELIVERED):
        raise InvalidState(
            f"Referral {referral.id} is {referral.status.value} and cannot be rewarded"
        )

    policy = repos.policy.current()
    referrer_id = referral.referrer_user_id

    # the caps below are read-then-write per referrer
    referrer = repos.customers.get_for_update(referrer_id)
    if referrer is None:
        raise NotFound(f"Referrer {referrer_id} not found")

    abuse = check_abuse_prevention(
        repos,
        referrer_id,
        referral.referred_user_phone,
        referral.referred_user_device_id,
        referral_id=referral.id,
        created_before=referral.created_at,
        policy=policy,
    )
    if not abuse.allowed:
        transition(repos, referral, ReferralStatus.REJECTED)
        return RewardOutcome(RewardStatus.REJECTED, referral.id, f"Abuse detected: {abuse.reason}")

    credited_so_far = repos.referrals.count_credited_referrals(referrer_id, exclude_id=referral.id)
    if credited_so_far >= policy.max_referrals_per_user:
        transition(repos, referral, ReferralStatus.REJECTED)
        return RewardOutcome(RewardStatus.REJECTED, referral.id, "Maximum referrals limit reached")

    monthly = repos.referrals.monthly_credited_sum(referrer_id, now.month, now.year)
    if monthly + referral.reward_amount > policy.monthly_referral_cap:
        transition(repos, referral, ReferralStatus.REJECTED)
        return RewardOutcome(RewardStatus.REJECTED, referral.id, "Monthly referral cap exceeded")

    if referral.is_expired(now):
        transition(repos, referral, ReferralStatus.EXPIRED)
        return RewardOutcome(RewardStatus.EXPIRED, referral.id, "Referral expired")

    txn_id = None
    if referral.reward_amount > 0:
        txn = wallet_ledger.credit(
            repos,
            referrer_id,
            referral.reward_amount,
            description=f"Referral reward for referral {referral.id}",
            order_id=order.id,
            now=now,
        )
        txn_id = txn.id

    transition(repos, referral, ReferralStatus.CREDITED, credited_at=now)
    repos.customers.increment_referral_count(referrer_id, 1, referral.reward_amount)

    logger.info("referral reward %s credited to %s (referral %s, order %s)",
                referral.reward_amount, referrer_id, referral.id, order.id)
    return RewardOutcome(RewardStatus.CREDITED, referral.id, transaction_id=txn_id)


# ---------
# maintenance / reporting
# ---------

def expire_stale_referrals(repos: Repositories, now: Optional[datetime] = None) -> List[str]:
    """move every non-terminal referral past its expiry to EXPIRED."""
    now = now or utcnow()
    expired: List[str] = []

    for candidate in repos.referrals.find_expirable(now):
        with repos.transaction():
            if repos.referrals.set_status(candidate.id, ReferralStatus.EXPIRED, expected=NON_TERMINAL_STATUSES):
                expired.append(candidate.id)

    if expired:
        logger.info("expired %d stale referral(s)", len(expired))
    return expired


def referral_summary(repos: Repositories, referrer_id: str) -> Dict[str, Any]:
    customer = repos.customers.get(referrer_id)
    if customer is None:
        raise NotFound(f"Customer {referrer_id} not found")

    referrals = repos.referrals.find_by_referrer(referrer_id)
    by_status = {status.value: 0 for status in ReferralStatus}
    for r in referrals:
        by_status[r.status.value] += 1

    return {
        "user_id": referrer_id,
        "referral_code": customer.referral_code,
        "referral_count": customer.referral_count,
        "total_earnings": customer.total_referral_earnings,
        "by_status": by_status,
        "referrals": referrals,
    }
