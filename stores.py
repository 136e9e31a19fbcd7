"""
store interfaces consumed by the engines.

the engines never talk to a database directly: they receive a Repositories
bundle and call these methods. db/repositories.py implements them on
PostgreSQL, db/memory.py in process.

locking contract:
  - get_for_update() holds an exclusive lock on the row until the enclosing
    transaction ends.
  - set_wallet_balance() / set_status() are conditional writes: they return
    False instead of writing when the stored value is not the expected one.
"""
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Protocol

from models import (
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
)


class PolicyStore(Protocol):
    def current(self) -> PolicyConfig: ...

    def fees(self) -> FeeConfig: ...


class CustomerStore(Protocol):
    def get(self, customer_id: str) -> Optional[Customer]: ...

    def get_for_update(self, customer_id: str) -> Optional[Customer]: ...

    def save(self, customer: Customer) -> Customer: ...

    def find_by_phone(self, phone: str) -> Optional[Customer]: ...

    def find_by_referral_code(self, code: str) -> Optional[Customer]: ...

    def mark_first_order(self, customer_id: str, at: datetime) -> bool: ...

    def set_wallet_balance(self, customer_id: str, amount: Decimal, expected: Decimal) -> bool: ...

    def set_referral_code(self, customer_id: str, code: str) -> bool: ...

    def set_referred_by(self, customer_id: str, referrer_id: str) -> bool: ...

    def increment_referral_count(self, customer_id: str, n: int, earnings: Decimal) -> None: ...


class ReferralStore(Protocol):
    def get(self, referral_id: str) -> Optional[Referral]: ...

    def get_for_update(self, referral_id: str) -> Optional[Referral]: ...

    def create(self, referral: Referral) -> Referral: ...

    def find_by_referred_user(self, user_id: str) -> Optional[Referral]: ...

    def find_by_referrer(self, referrer_id: str) -> List[Referral]: ...

    def find_duplicate(self, phone: str, device_id: Optional[str],
                       exclude_id: Optional[str] = None,
                       created_before: Optional[datetime] = None) -> bool: ...

    def monthly_credited_sum(self, referrer_id: str, month: int, year: int) -> Decimal: ...

    def count_credited_referrals(self, referrer_id: str, exclude_id: Optional[str] = None) -> int: ...

    def set_status(self, referral_id: str, status: ReferralStatus,
                   expected: Iterable[ReferralStatus], **extra) -> bool: ...

    def find_expirable(self, now: datetime) -> List[Referral]: ...


class LedgerStore(Protocol):
    def append(self, txn: WalletTransaction) -> WalletTransaction: ...

    def current_balance(self, user_id: str) -> Decimal: ...

    def transactions(self, user_id: str, limit: int = 50) -> List[WalletTransaction]: ...


class PromoCodeStore(Protocol):
    def get(self, promo_id: str) -> Optional[PromoCode]: ...

    def get_by_code(self, code: str) -> Optional[PromoCode]: ...

    def save(self, promo: PromoCode) -> PromoCode: ...

    def user_usage_count(self, promo_id: str, user_id: str) -> int: ...

    def record_usage(self, usage: PromoCodeUsage) -> bool: ...


class OrderStore(Protocol):
    def get(self, order_id: str) -> Optional[Order]: ...

    def save(self, order: Order) -> Order: ...

    def set_status(self, order_id: str, status: OrderStatus,
                   expected: Iterable[OrderStatus], **extra) -> bool: ...


class Repositories:
    """
    bundle of stores sharing one unit of work.

    transaction() is re-entrant: only the outermost block commits, and an
    exception anywhere inside rolls back everything written since the
    outermost block began. subclasses implement _begin/_commit/_rollback.
    """

    policy: PolicyStore
    customers: CustomerStore
    referrals: ReferralStore
    ledger: LedgerStore
    promos: PromoCodeStore
    orders: OrderStore

    def _depth(self) -> int:
        raise NotImplementedError

    def _set_depth(self, depth: int) -> None:
        raise NotImplementedError

    def _begin(self) -> None:
        raise NotImplementedError

    def _commit(self) -> None:
        raise NotImplementedError

    def _rollback(self) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        """called after the outermost commit or rollback."""

    @contextmanager
    def transaction(self) -> Iterator["Repositories"]:
        depth = self._depth()
        if depth == 0:
            self._begin()
        self._set_depth(depth + 1)
        try:
            yield self
        except BaseException:
            self._set_depth(depth)
            if depth == 0:
                try:
                    self._rollback()
                finally:
                    self._release()
            raise
        self._set_depth(depth)
        if depth == 0:
            try:
                self._commit()
            finally:
                self._release()
