"""
PostgreSQL implementation of the store interfaces (see stores.py).

every method runs on the connection handed to PgRepositories; nothing here
commits. PgRepositories.transaction() owns commit/rollback, and
get_for_update() takes row locks with SELECT ... FOR UPDATE that are held
until that transaction ends.

driver errors are translated into StorageError so the engines never see
psycopg types.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Sequence

import psycopg
from psycopg import Connection, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from db.db import get_conn
from errors import IneligibleOffer, InvalidState, StorageError
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
    money,
)
from stores import Repositories

logger = logging.getLogger(__name__)

CUSTOMER_COLUMNS = (
    "id", "phone", "device_id", "wallet_balance", "has_used_welcome_offer",
    "first_order_placed_at", "referral_code", "referred_by", "referral_count",
    "total_referral_earnings", "created_at",
)
REFERRAL_COLUMNS = (
    "id", "referrer_user_id", "referred_user_id", "referred_user_phone",
    "referred_user_device_id", "status", "reward_amount", "credited_at",
    "order_id", "created_at", "expires_at",
)
LEDGER_COLUMNS = (
    "id", "user_id", "type", "amount", "balance_before", "balance_after",
    "description", "order_id", "created_at",
)
PROMO_COLUMNS = (
    "id", "code", "description", "type", "discount_value", "max_discount_cap",
    "min_order_value", "expiry_date", "usage_limit", "usage_count",
    "per_user_limit", "is_active", "is_visible",
)
PROMO_USAGE_COLUMNS = (
    "id", "user_id", "promo_code_id", "order_id", "discount_amount", "used_at",
)
ORDER_COLUMNS = (
    "id", "user_id", "status", "offer_type", "promo_code_id", "subtotal",
    "handling_fee", "delivery_fee", "rain_fee", "tax_amount",
    "welcome_offer_discount", "promo_discount", "wallet_amount_used",
    "final_total", "created_at", "delivered_at",
)

# columns set_status() may write alongside the status
REFERRAL_STATUS_EXTRAS = {"credited_at", "order_id"}
ORDER_STATUS_EXTRAS = {"delivered_at"}

POLICY_DOC_ID = "offer_config"
FEES_DOC_ID = "fee_config"


def _value(v):
    return v.value if isinstance(v, Enum) else v


def _params(model, columns: Sequence[str]) -> List:
    return [_value(getattr(model, c)) for c in columns]


def _columns(columns: Sequence[str]) -> sql.Composable:
    return sql.SQL(", ").join(sql.Identifier(c) for c in columns)


def _placeholders(columns: Sequence[str]) -> sql.Composable:
    return sql.SQL(", ").join(sql.Placeholder() * len(columns))


def _month_bounds(month: int, year: int):
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


class _PgStore:
    def __init__(self, conn: Connection):
        self._conn = conn

    @contextmanager
    def _cursor(self):
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                yield cur
        except psycopg.Error as e:
            logger.error("database error in %s: %s", type(self).__name__, e)
            raise StorageError(str(e)) from e

    def _fetch_one(self, query, params=()):
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _fetch_all(self, query, params=()):
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def _execute(self, query, params=()) -> int:
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def _set_status(self, table: str, row_id: str, status: Enum,
                    expected: Iterable[Enum], allowed_extras, extra) -> bool:
        unknown = set(extra) - allowed_extras
        if unknown:
            raise ValueError(f"cannot set {sorted(unknown)} on {table}")

        values = {"status": status.value, **extra}
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values
        )
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s AND status = ANY(%s)").format(
            sql.Identifier(table), assignments,
        )
        params = [*values.values(), row_id, [s.value for s in expected]]
        return self._execute(query, params) == 1


class PgPolicyStore(_PgStore):
    """policy documents live as JSONB rows in app_config."""

    def _document(self, doc_id: str):
        row = self._fetch_one("SELECT data FROM app_config WHERE id = %s", (doc_id,))
        return row["data"] if row is not None else None

    def current(self) -> PolicyConfig:
        data = self._document(POLICY_DOC_ID)
        return PolicyConfig.from_row(data) if data is not None else PolicyConfig()

    def fees(self) -> FeeConfig:
        data = self._document(FEES_DOC_ID)
        return FeeConfig.from_row(data) if data is not None else FeeConfig()

    def update(self, policy: Optional[PolicyConfig] = None, fees: Optional[FeeConfig] = None) -> None:
        for doc_id, doc in ((POLICY_DOC_ID, policy), (FEES_DOC_ID, fees)):
            if doc is None:
                continue
            self._execute(
                """
                INSERT INTO app_config (id, data)
                VALUES (%s, %s)
                ON CONFLICT (id)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                """,
                (doc_id, Jsonb(doc.model_dump(mode="json"))),
            )


class PgCustomerStore(_PgStore):
    _select = sql.SQL("SELECT {} FROM customers").format(_columns(CUSTOMER_COLUMNS))

    def _one(self, where: str, params, lock: bool = False) -> Optional[Customer]:
        query = self._select + sql.SQL(" WHERE " + where + (" FOR UPDATE" if lock else ""))
        row = self._fetch_one(query, params)
        return Customer.from_row(row) if row is not None else None

    def get(self, customer_id: str) -> Optional[Customer]:
        return self._one("id = %s", (customer_id,))

    def get_for_update(self, customer_id: str) -> Optional[Customer]:
        return self._one("id = %s", (customer_id,), lock=True)

    def save(self, customer: Customer) -> Customer:
        updates = sql.SQL(", ").join(
            sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c))
            for c in CUSTOMER_COLUMNS if c != "id"
        )
        query = sql.SQL(
            "INSERT INTO customers ({}) VALUES ({}) ON CONFLICT (id) DO UPDATE SET {}"
        ).format(_columns(CUSTOMER_COLUMNS), _placeholders(CUSTOMER_COLUMNS), updates)
        self._execute(query, _params(customer, CUSTOMER_COLUMNS))
        return customer

    def find_by_phone(self, phone: str) -> Optional[Customer]:
        return self._one("phone = %s ORDER BY created_at LIMIT 1", (phone,))

    def find_by_referral_code(self, code: str) -> Optional[Customer]:
        return self._one("referral_code = %s", (code,))

    def mark_first_order(self, customer_id: str, at: datetime) -> bool:
        return self._execute(
            """
            UPDATE customers
            SET first_order_placed_at = %s, has_used_welcome_offer = TRUE
            WHERE id = %s AND first_order_placed_at IS NULL
            """,
            (at, customer_id),
        ) == 1

    def set_wallet_balance(self, customer_id: str, amount: Decimal, expected: Decimal) -> bool:
        return self._execute(
            "UPDATE customers SET wallet_balance = %s WHERE id = %s AND wallet_balance = %s",
            (amount, customer_id, expected),
        ) == 1

    def set_referral_code(self, customer_id: str, code: str) -> bool:
        # uniqueness check first; the UNIQUE constraint catches the remaining race
        if self._fetch_one("SELECT 1 FROM customers WHERE referral_code = %s", (code,)) is not None:
            return False
        return self._execute(
            "UPDATE customers SET referral_code = %s WHERE id = %s AND referral_code IS NULL",
            (code, customer_id),
        ) == 1

    def set_referred_by(self, customer_id: str, referrer_id: str) -> bool:
        return self._execute(
            "UPDATE customers SET referred_by = %s WHERE id = %s AND referred_by IS NULL",
            (referrer_id, customer_id),
        ) == 1

    def increment_referral_count(self, customer_id: str, n: int, earnings: Decimal) -> None:
        updated = self._execute(
            """
            UPDATE customers
            SET referral_count = referral_count + %s,
                total_referral_earnings = total_referral_earnings + %s
            WHERE id = %s
            """,
            (n, earnings, customer_id),
        )
        if updated != 1:
            raise StorageError(f"Failed to update referral counters for {customer_id}")


class PgReferralStore(_PgStore):
    _select = sql.SQL("SELECT {} FROM referrals").format(_columns(REFERRAL_COLUMNS))

    def _one(self, where: str, params, lock: bool = False) -> Optional[Referral]:
        query = self._select + sql.SQL(" WHERE " + where + (" FOR UPDATE" if lock else ""))
        row = self._fetch_one(query, params)
        return Referral.from_row(row) if row is not None else None

    def get(self, referral_id: str) -> Optional[Referral]:
        return self._one("id = %s", (referral_id,))

    def get_for_update(self, referral_id: str) -> Optional[Referral]:
        return self._one("id = %s", (referral_id,), lock=True)

    def create(self, referral: Referral) -> Referral:
        """
        insert the referral. referred_user_id is UNIQUE: a second referral
        for the same user inserts nothing and is refused.
        """
        query = sql.SQL(
            "INSERT INTO referrals ({}) VALUES ({}) "
            "ON CONFLICT (referred_user_id) DO NOTHING RETURNING id"
        ).format(_columns(REFERRAL_COLUMNS), _placeholders(REFERRAL_COLUMNS))
        row = self._fetch_one(query, _params(referral, REFERRAL_COLUMNS))
        if row is None:
            raise IneligibleOffer(f"User {referral.referred_user_id} already has a referrer.")
        return referral

    def find_by_referred_user(self, user_id: str) -> Optional[Referral]:
        return self._one("referred_user_id = %s", (user_id,))

    def find_by_referrer(self, referrer_id: str) -> List[Referral]:
        query = self._select + sql.SQL(" WHERE referrer_user_id = %s ORDER BY created_at DESC")
        return [Referral.from_row(r) for r in self._fetch_all(query, (referrer_id,))]

    def find_duplicate(self, phone: str, device_id: Optional[str],
                       exclude_id: Optional[str] = None,
                       created_before: Optional[datetime] = None) -> bool:
        params: List = [phone]
        match = "referred_user_phone = %s"
        if device_id:
            match += " OR referred_user_device_id = %s"
            params.append(device_id)

        where_clauses = [f"({match})"]
        if exclude_id is not None:
            where_clauses.append("id <> %s")
            params.append(exclude_id)
        if created_before is not None:
            where_clauses.append("created_at < %s")
            params.append(created_before)

        where_sql = " AND ".join(where_clauses)
        row = self._fetch_one(f"SELECT 1 FROM referrals WHERE {where_sql} LIMIT 1", params)
        return row is not None

    def monthly_credited_sum(self, referrer_id: str, month: int, year: int) -> Decimal:
        start, end = _month_bounds(month, year)
        row = self._fetch_one(
            """
            SELECT COALESCE(SUM(reward_amount), 0) AS total
            FROM referrals
            WHERE referrer_user_id = %s
              AND status = %s
              AND credited_at >= %s
              AND credited_at < %s
            """,
            (referrer_id, ReferralStatus.CREDITED.value, start, end),
        )
        return money(row["total"]) if row is not None else ZERO

    def count_credited_referrals(self, referrer_id: str, exclude_id: Optional[str] = None) -> int:
        params: List = [referrer_id, ReferralStatus.CREDITED.value]
        where_sql = "referrer_user_id = %s AND status = %s"
        if exclude_id is not None:
            where_sql += " AND id <> %s"
            params.append(exclude_id)
        row = self._fetch_one(f"SELECT COUNT(*) AS n FROM referrals WHERE {where_sql}", params)
        return row["n"] if row is not None else 0

    def set_status(self, referral_id: str, status: ReferralStatus,
                   expected: Iterable[ReferralStatus], **extra) -> bool:
        return self._set_status("referrals", referral_id, status, expected,
                                REFERRAL_STATUS_EXTRAS, extra)

    def find_expirable(self, now: datetime) -> List[Referral]:
        query = self._select + sql.SQL(
            " WHERE status = ANY(%s) AND expires_at IS NOT NULL AND expires_at < %s"
        )
        rows = self._fetch_all(query, ([s.value for s in NON_TERMINAL_STATUSES], now))
        return [Referral.from_row(r) for r in rows]


class PgLedgerStore(_PgStore):
    def append(self, txn: WalletTransaction) -> WalletTransaction:
        query = sql.SQL("INSERT INTO wallet_transactions ({}) VALUES ({})").format(
            _columns(LEDGER_COLUMNS), _placeholders(LEDGER_COLUMNS),
        )
        self._execute(query, _params(txn, LEDGER_COLUMNS))
        return txn

    def current_balance(self, user_id: str) -> Decimal:
        row = self._fetch_one(
            """
            SELECT balance_after
            FROM wallet_transactions
            WHERE user_id = %s
            ORDER BY seq DESC
            LIMIT 1
            """,
            (user_id,),
        )
        return row["balance_after"] if row is not None else ZERO

    def transactions(self, user_id: str, limit: int = 50) -> List[WalletTransaction]:
        query = sql.SQL(
            "SELECT {} FROM wallet_transactions WHERE user_id = %s ORDER BY seq DESC LIMIT %s"
        ).format(_columns(LEDGER_COLUMNS))
        return [WalletTransaction.from_row(r) for r in self._fetch_all(query, (user_id, limit))]


class PgPromoCodeStore(_PgStore):
    _select = sql.SQL("SELECT {} FROM promo_codes").format(_columns(PROMO_COLUMNS))

    def get(self, promo_id: str) -> Optional[PromoCode]:
        row = self._fetch_one(self._select + sql.SQL(" WHERE id = %s"), (promo_id,))
        return PromoCode.from_row(row) if row is not None else None

    def get_by_code(self, code: str) -> Optional[PromoCode]:
        row = self._fetch_one(
            self._select + sql.SQL(" WHERE UPPER(code) = UPPER(%s)"), (code.strip(),)
        )
        return PromoCode.from_row(row) if row is not None else None

    def save(self, promo: PromoCode) -> PromoCode:
        updates = sql.SQL(", ").join(
            sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c))
            for c in PROMO_COLUMNS if c != "id"
        )
        query = sql.SQL(
            "INSERT INTO promo_codes ({}) VALUES ({}) ON CONFLICT (id) DO UPDATE SET {}"
        ).format(_columns(PROMO_COLUMNS), _placeholders(PROMO_COLUMNS), updates)
        self._execute(query, _params(promo, PROMO_COLUMNS))
        return promo

    def user_usage_count(self, promo_id: str, user_id: str) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM promo_code_usages WHERE promo_code_id = %s AND user_id = %s",
            (promo_id, user_id),
        )
        return row["n"] if row is not None else 0

    def record_usage(self, usage: PromoCodeUsage) -> bool:
        """bump usage_count only while under usage_limit, then log the usage."""
        bumped = self._execute(
            """
            UPDATE promo_codes
            SET usage_count = usage_count + 1
            WHERE id = %s
              AND (usage_limit IS NULL OR usage_count < usage_limit)
            """,
            (usage.promo_code_id,),
        )
        if bumped != 1:
            return False

        query = sql.SQL("INSERT INTO promo_code_usages ({}) VALUES ({})").format(
            _columns(PROMO_USAGE_COLUMNS), _placeholders(PROMO_USAGE_COLUMNS),
        )
        self._execute(query, _params(usage, PROMO_USAGE_COLUMNS))
        return True


class PgOrderStore(_PgStore):
    def get(self, order_id: str) -> Optional[Order]:
        query = sql.SQL("SELECT {} FROM orders WHERE id = %s").format(_columns(ORDER_COLUMNS))
        row = self._fetch_one(query, (order_id,))
        return Order.from_row(row) if row is not None else None

    def save(self, order: Order) -> Order:
        query = sql.SQL(
            "INSERT INTO orders ({}) VALUES ({}) ON CONFLICT (id) DO NOTHING RETURNING id"
        ).format(_columns(ORDER_COLUMNS), _placeholders(ORDER_COLUMNS))
        if self._fetch_one(query, _params(order, ORDER_COLUMNS)) is None:
            raise InvalidState(f"Order {order.id} already exists.")
        return order

    def set_status(self, order_id: str, status: OrderStatus,
                   expected: Iterable[OrderStatus], **extra) -> bool:
        return self._set_status("orders", order_id, status, expected,
                                ORDER_STATUS_EXTRAS, extra)


class PgRepositories(Repositories):
    """
    all stores share one connection. psycopg opens a transaction on the
    first statement (autocommit is off), so _begin has nothing to do.
    """

    def __init__(self, conn: Connection):
        self.conn = conn
        self._tx_depth = 0

        self.policy = PgPolicyStore(conn)
        self.customers = PgCustomerStore(conn)
        self.referrals = PgReferralStore(conn)
        self.ledger = PgLedgerStore(conn)
        self.promos = PgPromoCodeStore(conn)
        self.orders = PgOrderStore(conn)

    def _depth(self) -> int:
        return self._tx_depth

    def _set_depth(self, depth: int) -> None:
        self._tx_depth = depth

    def _begin(self) -> None:
        pass

    def _commit(self) -> None:
        try:
            self.conn.commit()
        except psycopg.Error as e:
            raise StorageError(f"commit failed: {e}") from e

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except psycopg.Error as e:
            raise StorageError(f"rollback failed: {e}") from e


@contextmanager
def open_repositories(dsn: Optional[str] = None):
    """PgRepositories over a fresh connection, closed on exit."""
    try:
        with get_conn(dsn) as conn:
            yield PgRepositories(conn)
    except psycopg.OperationalError as e:
        raise StorageError(f"database unavailable: {e}") from e
