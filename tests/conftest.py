import itertools
from datetime import datetime, timezone
from decimal import Decimal

import pytest

import referral_engine
import wallet_ledger
from db.memory import InMemoryRepositories
from models import Customer, FeeConfig, PolicyConfig, PromoCode, PromoCodeType

# fixed clock: mid-month so month-window tests don't straddle a boundary
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

NO_FEES = FeeConfig(
    handling_fee_enabled=False,
    delivery_fee_enabled=False,
    tax_enabled=False,
    rain_fee_enabled=False,
)

_phones = itertools.count(1)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def repos():
    """in-memory repositories with default policy and default fees."""
    return InMemoryRepositories()


@pytest.fixture
def feeless_repos():
    """same policy, but no fees/tax so totals are easy to read."""
    return InMemoryRepositories(fees=NO_FEES)


@pytest.fixture
def set_policy():
    def _set(repos, **changes):
        policy = PolicyConfig(**changes)
        repos.policy.update(policy=policy)
        return policy

    return _set


@pytest.fixture
def add_customer():
    """
    create a customer. `wallet` is funded through the ledger so the
    ledger/balance invariant holds from the start.
    """

    def _add(repos, customer_id, phone=None, device_id=None, wallet=None, **fields):
        n = next(_phones)
        customer = Customer(
            id=customer_id,
            phone=phone or f"98{n:08d}",
            device_id=device_id or f"device-{customer_id}-{n}",
            created_at=NOW,
            **fields,
        )
        repos.customers.save(customer)
        if wallet:
            wallet_ledger.credit(repos, customer_id, Decimal(str(wallet)), "Opening balance", now=NOW)
        return repos.customers.get(customer_id)

    return _add


@pytest.fixture
def add_promo():
    def _add(repos, code, kind=PromoCodeType.PERCENTAGE, discount_value="10", **fields):
        promo = PromoCode(code=code, type=kind, discount_value=Decimal(discount_value), **fields)
        return repos.promos.save(promo)

    return _add


@pytest.fixture
def referred_pair(add_customer):
    """
    referrer A and referred B, with B registered under A's code.
    returns (referrer, referred, referral).
    """

    def _pair(repos, referrer_id="A", referred_id="B", when=NOW):
        referrer = repos.customers.get(referrer_id) or add_customer(repos, referrer_id)
        referred = add_customer(repos, referred_id)
        code = referral_engine.get_or_generate_referral_code(repos, referrer.id)
        referral = referral_engine.register_referral(repos, referred.id, code, now=when)
        return repos.customers.get(referrer.id), referred, referral

    return _pair
