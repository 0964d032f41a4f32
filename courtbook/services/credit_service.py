"""
Stored-credit accounts and reservations.

A reservation is a logical hold recorded on the transaction
(``credit_reserved``/``credit_used``); it never changes the balance.
Available-to-spend is the balance minus every outstanding hold:

    available = balance - sum(credit_used where credit_reserved and not credit_deducted)

All functions work inside the caller's session so credit state commits or
rolls back together with the transaction and booking writes that depend on it.
"""

import logging

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import CreditAccount, Transaction
from courtbook.services.exceptions import (
    ConflictError,
    CreditShortfallError,
    InsufficientCreditError,
    ValidationError,
)

logger = logging.getLogger(__name__)


async def ensure_account(session: AsyncSession, user_id: int) -> CreditAccount:
    """Return the user's credit account, creating an empty one if missing."""
    account = await session.get(CreditAccount, user_id)
    if account is None:
        account = CreditAccount(user_id=user_id, balance=0)
        session.add(account)
        await session.flush()
    return account


async def get_balance(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
    )
    return result.scalar_one_or_none() or 0


async def get_outstanding_holds(session: AsyncSession, user_id: int) -> int:
    """Sum of credit reserved by this user and not yet deducted."""
    result = await session.execute(
        select(func.coalesce(func.sum(Transaction.credit_used), 0)).where(
            and_(
                Transaction.user_id == user_id,
                Transaction.credit_reserved == True,  # noqa: E712
                Transaction.credit_deducted == False,  # noqa: E712
            )
        )
    )
    return int(result.scalar_one() or 0)


async def get_available(session: AsyncSession, user_id: int) -> int:
    balance = await get_balance(session, user_id)
    return balance - await get_outstanding_holds(session, user_id)


async def get_summary(session: AsyncSession, user_id: int) -> dict:
    balance = await get_balance(session, user_id)
    held = await get_outstanding_holds(session, user_id)
    return {"user_id": user_id, "balance": balance, "reserved": held, "available": balance - held}


async def reserve(session: AsyncSession, txn: Transaction, amount: int) -> None:
    """
    Place a hold of ``amount`` credit for a transaction.

    Raises:
        ValidationError: If amount is negative or the transaction already holds credit
        InsufficientCreditError: If the user's available credit is below amount
    """
    if amount < 0:
        raise ValidationError("Credit amount cannot be negative")
    if txn.credit_reserved or txn.credit_deducted:
        raise ValidationError(f"Transaction {txn.id} already holds a credit reservation")
    if amount == 0:
        return

    # Concurrent reserves for the same user queue on the account row
    result = await session.execute(
        select(CreditAccount)
        .where(CreditAccount.user_id == txn.user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    balance = account.balance if account is not None else 0
    available = balance - await get_outstanding_holds(session, txn.user_id)
    if amount > available:
        raise InsufficientCreditError(
            f"Insufficient credit: {available} available, {amount} requested",
            details={"available": available, "requested": amount},
        )

    txn.credit_used = amount
    txn.credit_reserved = True
    logger.info(f"Reserved {amount} credit for transaction {txn.id} (user {txn.user_id})")


async def deduct(session: AsyncSession, txn: Transaction) -> bool:
    """
    Turn the transaction's hold into a real balance decrement.

    No-op when already deducted or nothing is reserved. The balance update is
    guarded on ``balance >= credit_used`` so it can never go negative.

    Returns:
        True if the balance was decremented by this call
    """
    if txn.credit_deducted:
        return False
    if not txn.credit_reserved or not txn.credit_used:
        return False

    result = await session.execute(
        update(CreditAccount)
        .where(
            and_(
                CreditAccount.user_id == txn.user_id,
                CreditAccount.balance >= txn.credit_used,
            )
        )
        .values(balance=CreditAccount.balance - txn.credit_used)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CreditShortfallError(
            f"Cannot deduct {txn.credit_used} credit for transaction {txn.id}: balance too low"
        )

    txn.credit_deducted = True
    logger.info(f"Deducted {txn.credit_used} credit for transaction {txn.id} (user {txn.user_id})")
    return True


def release(txn: Transaction) -> bool:
    """
    Drop the transaction's hold.

    Returns:
        True if a hold was cleared, False if there was none

    Raises:
        ConflictError: If the credit was already deducted
    """
    if txn.credit_deducted:
        raise ConflictError(
            f"Cannot release credit for transaction {txn.id}: already deducted"
        )
    if not txn.credit_reserved:
        return False
    txn.credit_reserved = False
    logger.info(f"Released {txn.credit_used} credit hold for transaction {txn.id}")
    return True


async def credit(session: AsyncSession, user_id: int, amount: int) -> int:
    """
    Increase a user's balance (refund compensation).

    Returns:
        The new balance
    """
    if amount < 0:
        raise ValidationError("Credit amount cannot be negative")
    account = await ensure_account(session, user_id)
    if amount:
        await session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(balance=CreditAccount.balance + amount)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Credited {amount} to user {user_id}")
    await session.refresh(account)
    return account.balance
