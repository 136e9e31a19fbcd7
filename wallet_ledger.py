import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from errors import ConcurrentUpdate, InsufficientFunds, LedgerMismatch, NotFound
from models import WalletTransaction, WalletTransactionType, money, utcnow
from stores import Repositories

logger = logging.getLogger(__name__)


def credit(repos: Repositories, user_id: str, amount, description: str,
           order_id: Optional[str] = None, now: Optional[datetime] = None) -> WalletTransaction:
    """add money to a wallet (referral rewards, goodwill credits)."""
    return _post(repos, user_id, WalletTransactionType.CREDIT, amount, description, order_id, now)


def debit(repos: Repositories, user_id: str, amount, description: str,
          order_id: Optional[str] = None, now: Optional[datetime] = None) -> WalletTransaction:
    """spend wallet money. raises InsufficientFunds instead of going negative."""
    return _post(repos, user_id, WalletTransactionType.DEBIT, amount, description, order_id, now)


def refund(repos: Repositories, user_id: str, amount, description: str,
           order_id: Optional[str] = None, now: Optional[datetime] = None) -> WalletTransaction:
    """return wallet money spent on a cancelled order."""
    return _post(repos, user_id, WalletTransactionType.REFUND, amount, description, order_id, now)


def _post(
    repos: Repositories,
    user_id: str,
    txn_type: WalletTransactionType,
    amount,
    description: str,
    order_id: Optional[str],
    now: Optional[datetime],
) -> WalletTransaction:
    """
    one atomic unit:
      1) lock the customer row
      2) read balance, check it agrees with the ledger
      3) compute the new balance (debits may not go negative)
      4) append the transaction + CAS the live balance

    if the caller already holds a transaction this joins it, so e.g. an
    order's wallet debit commits or rolls back together with the order.
    """
    amount = money(amount)
    if amount <= 0:
        raise ValueError("Wallet transaction amount must be greater than 0.")

    with repos.transaction():
        customer = repos.customers.get_for_update(user_id)
        if customer is None:
            raise NotFound(f"Customer {user_id} not found")

        balance_before = customer.wallet_balance
        ledger_balance = repos.ledger.current_balance(user_id)
        if ledger_balance != balance_before:
            raise LedgerMismatch(
                f"Wallet for {user_id} is out of sync: ledger={ledger_balance} "
                f"customer={balance_before}"
            )

        if txn_type is WalletTransactionType.DEBIT:
            if amount > balance_before:
                raise InsufficientFunds(
                    f"Insufficient wallet balance: ₹{balance_before} available, ₹{amount} required"
                )
            balance_after = balance_before - amount
        else:
            balance_after = balance_before + amount

        txn = WalletTransaction(
            user_id=user_id,
            type=txn_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            order_id=order_id,
            created_at=now or utcnow(),
        )
        repos.ledger.append(txn)

        if not repos.customers.set_wallet_balance(user_id, balance_after, expected=balance_before):
            raise ConcurrentUpdate(f"Wallet balance for {user_id} changed concurrently")

    logger.info(
        "wallet %s user=%s amount=%s balance %s -> %s order=%s",
        txn_type.value, user_id, amount, balance_before, balance_after, order_id,
    )
    return txn


def wallet_summary(repos: Repositories, user_id: str, limit: int = 20) -> Dict[str, Any]:
    customer = repos.customers.get(user_id)
    if customer is None:
        raise NotFound(f"Customer {user_id} not found")

    return {
        "user_id": user_id,
        "balance": customer.wallet_balance,
        "transactions": repos.ledger.transactions(user_id, limit=limit),
    }


def current_balance(repos: Repositories, user_id: str) -> Decimal:
    customer = repos.customers.get(user_id)
    if customer is None:
        raise NotFound(f"Customer {user_id} not found")
    return customer.wallet_balance
