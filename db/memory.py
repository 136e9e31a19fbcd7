"""
in-process implementation of the store interfaces.

one RLock guards the whole dataset. a transaction holds it from the
outermost begin to commit/rollback, so a read-modify-write inside a
transaction can never interleave with another thread's. rollback restores a
deep copy taken at begin.
"""
import copy
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from errors import IneligibleOffer, InvalidState
from models import (
    ZERO,
    Customer,
    FeeConfig,
    Order,
    OrderStatus,
    PolicyConfig,
    PromoCode,
    PromoCodeUsage,
    Referral,
    ReferralStatus,
    WalletTransaction,
    NON_TERMINAL_STATUSES,
)
from stores import Repositories


class _State:
    def __init__(self):
        self.customers: Dict[str, Customer] = {}
        self.referrals: Dict[str, Referral] = {}
        self.ledger: Dict[str, List[WalletTransaction]] = {}
        self.promos: Dict[str, PromoCode] = {}
        self.promo_usages: List[PromoCodeUsage] = []
        self.orders: Dict[str, Order] = {}


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class _Store:
    def __init__(self, repos: "InMemoryRepositories"):
        self._repos = repos

    @property
    def _lock(self):
        return self._repos.lock

    @property
    def _state(self) -> _State:
        return self._repos.state


class InMemoryPolicyStore:
    def __init__(self, policy: Optional[PolicyConfig] = None, fees: Optional[FeeConfig] = None):
        self._policy = policy or PolicyConfig()
        self._fees = fees or FeeConfig()

    def current(self) -> PolicyConfig:
        return self._policy

    def fees(self) -> FeeConfig:
        return self._fees

    def update(self, policy: Optional[PolicyConfig] = None, fees: Optional[FeeConfig] = None) -> None:
        if policy is not None:
            self._policy = policy
        if fees is not None:
            self._fees = fees


class InMemoryCustomerStore(_Store):
    def get(self, customer_id: str) -> Optional[Customer]:
        with self._lock:
            return _copy(self._state.customers.get(customer_id))

    get_for_update = get

    def save(self, customer: Customer) -> Customer:
        with self._lock:
            self._state.customers[customer.id] = _copy(customer)
            return _copy(customer)

    def find_by_phone(self, phone: str) -> Optional[Customer]:
        with self._lock:
            for c in self._state.customers.values():
                if c.phone == phone:
                    return _copy(c)
        return None

    def find_by_referral_code(self, code: str) -> Optional[Customer]:
        with self._lock:
            for c in self._state.customers.values():
                if c.referral_code == code:
                    return _copy(c)
        return None

    def mark_first_order(self, customer_id: str, at: datetime) -> bool:
        with self._lock:
            c = self._state.customers.get(customer_id)
            if c is None or c.first_order_placed_at is not None:
                return False
            c.first_order_placed_at = at
            c.has_used_welcome_offer = True
            return True

    def set_wallet_balance(self, customer_id: str, amount: Decimal, expected: Decimal) -> bool:
        with self._lock:
            c = self._state.customers.get(customer_id)
            if c is None or c.wallet_balance != expected:
                return False
            c.wallet_balance = amount
            return True

    def set_referral_code(self, customer_id: str, code: str) -> bool:
        with self._lock:
            if any(c.referral_code == code for c in self._state.customers.values()):
                return False
            c = self._state.customers.get(customer_id)
            if c is None or c.referral_code:
                return False
            c.referral_code = code
            return True

    def set_referred_by(self, customer_id: str, referrer_id: str) -> bool:
        with self._lock:
            c = self._state.customers.get(customer_id)
            if c is None or c.referred_by is not None:
                return False
            c.referred_by = referrer_id
            return True

    def increment_referral_count(self, customer_id: str, n: int, earnings: Decimal) -> None:
        with self._lock:
            c = self._state.customers[customer_id]
            c.referral_count += n
            c.total_referral_earnings += earnings


class InMemoryReferralStore(_Store):
    def get(self, referral_id: str) -> Optional[Referral]:
        with self._lock:
            return _copy(self._state.referrals.get(referral_id))

    get_for_update = get

    def create(self, referral: Referral) -> Referral:
        with self._lock:
            if any(r.referred_user_id == referral.referred_user_id
                   for r in self._state.referrals.values()):
                raise IneligibleOffer(f"User {referral.referred_user_id} already has a referrer.")
            self._state.referrals[referral.id] = _copy(referral)
            return _copy(referral)

    def find_by_referred_user(self, user_id: str) -> Optional[Referral]:
        with self._lock:
            for r in self._state.referrals.values():
                if r.referred_user_id == user_id:
                    return _copy(r)
        return None

    def find_by_referrer(self, referrer_id: str) -> List[Referral]:
        with self._lock:
            rows = [_copy(r) for r in self._state.referrals.values()
                    if r.referrer_user_id == referrer_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    def find_duplicate(self, phone: str, device_id: Optional[str],
                       exclude_id: Optional[str] = None,
                       created_before: Optional[datetime] = None) -> bool:
        with self._lock:
            for r in self._state.referrals.values():
                if r.id == exclude_id:
                    continue
                if created_before is not None and r.created_at >= created_before:
                    continue
                if r.referred_user_phone == phone:
                    return True
                if device_id and r.referred_user_device_id == device_id:
                    return True
        return False

    def monthly_credited_sum(self, referrer_id: str, month: int, year: int) -> Decimal:
        total = ZERO
        with self._lock:
            for r in self._state.referrals.values():
                if (
                    r.referrer_user_id == referrer_id
                    and r.status is ReferralStatus.CREDITED
                    and r.credited_at is not None
                    and r.credited_at.month == month
                    and r.credited_at.year == year
                ):
                    total += r.reward_amount
        return total

    def count_credited_referrals(self, referrer_id: str, exclude_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for r in self._state.referrals.values()
                if r.referrer_user_id == referrer_id
                and r.id != exclude_id
                and r.status is ReferralStatus.CREDITED
            )

    def set_status(self, referral_id: str, status: ReferralStatus,
                   expected: Iterable[ReferralStatus], **extra) -> bool:
        expected = set(expected)
        with self._lock:
            r = self._state.referrals.get(referral_id)
            if r is None or r.status not in expected:
                return False
            r.status = status
            for key, value in extra.items():
                setattr(r, key, value)
            return True

    def find_expirable(self, now: datetime) -> List[Referral]:
        with self._lock:
            return [
                _copy(r) for r in self._state.referrals.values()
                if r.status in NON_TERMINAL_STATUSES
                and r.expires_at is not None
                and r.expires_at < now
            ]


class InMemoryLedgerStore(_Store):
    def append(self, txn: WalletTransaction) -> WalletTransaction:
        with self._lock:
            self._state.ledger.setdefault(txn.user_id, []).append(txn)
            return txn

    def current_balance(self, user_id: str) -> Decimal:
        with self._lock:
            rows = self._state.ledger.get(user_id)
            return rows[-1].balance_after if rows else ZERO

    def transactions(self, user_id: str, limit: int = 50) -> List[WalletTransaction]:
        with self._lock:
            rows = list(self._state.ledger.get(user_id, []))
        rows.reverse()
        return rows[:limit]


class InMemoryPromoCodeStore(_Store):
    def get(self, promo_id: str) -> Optional[PromoCode]:
        with self._lock:
            return _copy(self._state.promos.get(promo_id))

    def get_by_code(self, code: str) -> Optional[PromoCode]:
        wanted = code.strip().upper()
        with self._lock:
            for p in self._state.promos.values():
                if p.code.upper() == wanted:
                    return _copy(p)
        return None

    def save(self, promo: PromoCode) -> PromoCode:
        with self._lock:
            self._state.promos[promo.id] = _copy(promo)
            return _copy(promo)

    def user_usage_count(self, promo_id: str, user_id: str) -> int:
        with self._lock:
            return sum(
                1 for u in self._state.promo_usages
                if u.promo_code_id == promo_id and u.user_id == user_id
            )

    def record_usage(self, usage: PromoCodeUsage) -> bool:
        with self._lock:
            p = self._state.promos.get(usage.promo_code_id)
            if p is None:
                return False
            if p.usage_limit is not None and p.usage_count >= p.usage_limit:
                return False
            p.usage_count += 1
            self._state.promo_usages.append(_copy(usage))
            return True


class InMemoryOrderStore(_Store):
    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return _copy(self._state.orders.get(order_id))

    def save(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._state.orders:
                raise InvalidState(f"Order {order.id} already exists.")
            self._state.orders[order.id] = _copy(order)
            return _copy(order)

    def set_status(self, order_id: str, status: OrderStatus,
                   expected: Iterable[OrderStatus], **extra) -> bool:
        expected = set(expected)
        with self._lock:
            o = self._state.orders.get(order_id)
            if o is None or o.status not in expected:
                return False
            o.status = status
            for key, value in extra.items():
                setattr(o, key, value)
            return True


class InMemoryRepositories(Repositories):
    def __init__(self, policy: Optional[PolicyConfig] = None, fees: Optional[FeeConfig] = None):
        self.lock = threading.RLock()
        self.state = _State()
        self._local = threading.local()
        self._snapshot: Optional[_State] = None

        self.policy = InMemoryPolicyStore(policy, fees)
        self.customers = InMemoryCustomerStore(self)
        self.referrals = InMemoryReferralStore(self)
        self.ledger = InMemoryLedgerStore(self)
        self.promos = InMemoryPromoCodeStore(self)
        self.orders = InMemoryOrderStore(self)

    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def _set_depth(self, depth: int) -> None:
        self._local.depth = depth

    def _begin(self) -> None:
        self.lock.acquire()
        self._snapshot = copy.deepcopy(self.state)

    def _commit(self) -> None:
        self._snapshot = None

    def _rollback(self) -> None:
        if self._snapshot is not None:
            self.state = self._snapshot
            self._snapshot = None

    def _release(self) -> None:
        self.lock.release()
