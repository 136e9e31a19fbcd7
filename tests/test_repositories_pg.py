"""
PostgreSQL adapter tests. they need a reachable DATABASE_URL and are
skipped otherwise; every test starts from empty tables.
"""
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import psycopg
import pytest

from checkout_engine import IncentiveSelection, mark_order_delivered, place_order
from config import get_settings
from db.db import get_conn
from db.repositories import PgRepositories
from errors import IneligibleOffer, InsufficientFunds
import wallet_ledger
from models import (
    Customer,
    PolicyConfig,
    PromoCode,
    PromoCodeType,
    PromoCodeUsage,
    Referral,
    ReferralStatus,
)
from referral_engine import RewardStatus, get_or_generate_referral_code, register_referral

SCHEMA = Path(__file__).resolve().parent.parent / "db" / "schema.sql"
TABLES = "promo_code_usages, orders, wallet_transactions, referrals, promo_codes, customers, app_config"


def _database_available() -> bool:
    try:
        with psycopg.connect(get_settings().DATABASE_URL, connect_timeout=2):
            return True
    except psycopg.Error:
        return False


pytestmark = pytest.mark.skipif(not _database_available(), reason="PostgreSQL not reachable")


@pytest.fixture
def pg_repos():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA.read_text())
            cur.execute(f"TRUNCATE {TABLES} RESTART IDENTITY CASCADE")
        conn.commit()

        yield PgRepositories(conn)


def _customer(repos, customer_id, phone, **fields):
    with repos.transaction():
        repos.customers.save(Customer(id=customer_id, phone=phone, **fields))
    return repos.customers.get(customer_id)


def test_customer_round_trip(pg_repos, now):
    _customer(pg_repos, "u1", "9800000001", device_id="dev-1", created_at=now)

    loaded = pg_repos.customers.get("u1")
    assert loaded.phone == "9800000001"
    assert loaded.wallet_balance == Decimal("0")
    assert loaded.is_first_order
    assert pg_repos.customers.find_by_phone("9800000001").id == "u1"
    assert pg_repos.customers.get("nope") is None


def test_policy_document_defaults_and_update(pg_repos):
    assert pg_repos.policy.current() == PolicyConfig()

    pg_repos.policy.update(policy=PolicyConfig(welcome_offer_amount=Decimal("75")))
    pg_repos.conn.commit()

    assert pg_repos.policy.current().welcome_offer_amount == Decimal("75")


def test_wallet_balance_compare_and_swap(pg_repos):
    _customer(pg_repos, "u1", "9800000001")

    with pg_repos.transaction():
        assert pg_repos.customers.set_wallet_balance("u1", Decimal("10"), expected=Decimal("0"))
        assert not pg_repos.customers.set_wallet_balance("u1", Decimal("99"), expected=Decimal("0"))

    assert pg_repos.customers.get("u1").wallet_balance == Decimal("10")


def test_ledger_and_balance_commit_together(pg_repos, now):
    _customer(pg_repos, "u1", "9800000001")

    wallet_ledger.credit(pg_repos, "u1", Decimal("40"), "Referral reward", now=now)
    wallet_ledger.debit(pg_repos, "u1", Decimal("15"), "Wallet used", order_id="o1", now=now)
    with pytest.raises(InsufficientFunds):
        wallet_ledger.debit(pg_repos, "u1", Decimal("100"), "Wallet used", now=now)

    assert pg_repos.ledger.current_balance("u1") == Decimal("25.00")
    assert pg_repos.customers.get("u1").wallet_balance == Decimal("25.00")
    assert [t.amount for t in pg_repos.ledger.transactions("u1")] == [Decimal("15.00"), Decimal("40.00")]


def test_referral_status_is_conditional(pg_repos, now):
    _customer(pg_repos, "a", "9800000001")
    _customer(pg_repos, "b", "9800000002")
    referral = Referral(referrer_user_id="a", referred_user_id="b", referred_user_phone="9800000002",
                        reward_amount=Decimal("20"), created_at=now)

    with pg_repos.transaction():
        pg_repos.referrals.create(referral)
        with pytest.raises(IneligibleOffer):
            pg_repos.referrals.create(referral.model_copy(update={"id": "other"}))

    with pg_repos.transaction():
        assert pg_repos.referrals.set_status(referral.id, ReferralStatus.ORDER_PLACED,
                                             expected={ReferralStatus.PENDING}, order_id="o1")
        assert not pg_repos.referrals.set_status(referral.id, ReferralStatus.ORDER_PLACED,
                                                 expected={ReferralStatus.PENDING})

    stored = pg_repos.referrals.get(referral.id)
    assert stored.status is ReferralStatus.ORDER_PLACED
    assert stored.order_id == "o1"
    assert pg_repos.referrals.find_duplicate("9800000002", None)
    assert not pg_repos.referrals.find_duplicate("9800000002", None, exclude_id=referral.id)
    assert not pg_repos.referrals.find_duplicate("9800000002", None, created_before=now)


def test_promo_usage_limit(pg_repos, now):
    _customer(pg_repos, "u1", "9800000001")
    promo = PromoCode(code="Last1", type=PromoCodeType.FIXED_AMOUNT, discount_value=Decimal("10"),
                      usage_limit=1)

    with pg_repos.transaction():
        pg_repos.promos.save(promo)
        first = PromoCodeUsage(user_id="u1", promo_code_id=promo.id, order_id="o1",
                               discount_amount=Decimal("10"), used_at=now)
        assert pg_repos.promos.record_usage(first)
        assert not pg_repos.promos.record_usage(first.model_copy(update={"id": "again"}))

    assert pg_repos.promos.get_by_code("LAST1").usage_count == 1
    assert pg_repos.promos.user_usage_count(promo.id, "u1") == 1


def test_referral_reward_end_to_end(pg_repos, now):
    _customer(pg_repos, "A", "9800000001", device_id="dev-a")
    _customer(pg_repos, "B", "9800000002", device_id="dev-b")

    with pg_repos.transaction():
        code = get_or_generate_referral_code(pg_repos, "A")
    referral = register_referral(pg_repos, "B", code, now=now)
    assert referral.expires_at == now + timedelta(days=60)

    place_order(pg_repos, "B", Decimal("300"), IncentiveSelection(apply_welcome=True), order_id="o1", now=now)
    _, outcome = mark_order_delivered(pg_repos, "o1", now=now)
    _, again = mark_order_delivered(pg_repos, "o1", now=now)

    assert outcome.status is RewardStatus.CREDITED
    assert again.status is RewardStatus.NOOP
    assert pg_repos.customers.get("A").wallet_balance == Decimal("20.00")
    assert pg_repos.referrals.monthly_credited_sum("A", now.month, now.year) == Decimal("20.00")
    assert pg_repos.referrals.count_credited_referrals("A") == 1
