"""
services/wallet/ledger.py
Per-user stored-value balance with an append-only transaction log.

Each operation is one guarded UPDATE on the profile row plus one ledger
insert in the same transaction, so balance and ledger move together and
the balance can never go negative.
"""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.promo.resolver import money
from shared.models.models import Profile, TransactionType, WalletTransaction
from shared.utils.errors import NotFoundError, ServiceError

logger = logging.getLogger(__name__)


class InsufficientBalance(ServiceError):
    code = "insufficient_balance"
    message = "Insufficient wallet balance"


class InvalidAmount(ServiceError):
    code = "invalid_amount"
    message = "Amount must be greater than zero"


class WalletOwnerNotFound(NotFoundError):
    code = "user_not_found"
    message = "User not found"


async def _apply(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    transaction_type: TransactionType,
    description: str,
    booking_id: Optional[UUID],
) -> WalletTransaction:
    amount = money(amount)
    if amount <= 0:
        raise InvalidAmount()

    stmt = update(Profile).where(Profile.id == user_id)
    if transaction_type == TransactionType.DEBIT:
        stmt = stmt.where(Profile.wallet_balance >= amount).values(
            wallet_balance=Profile.wallet_balance - amount
        )
    else:
        stmt = stmt.values(wallet_balance=Profile.wallet_balance + amount)

    result = await db.execute(
        stmt.returning(Profile.wallet_balance)
    )
    new_balance = result.scalar_one_or_none()

    if new_balance is None:
        if await db.get(Profile, user_id) is None:
            raise WalletOwnerNotFound()
        raise InsufficientBalance(
            f"Insufficient wallet balance for a debit of {amount}",
        )

    transaction = WalletTransaction(
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        description=description,
        booking_id=booking_id,
        balance_after=money(new_balance),
    )
    db.add(transaction)
    await db.flush()
    logger.info(
        f"Wallet {transaction_type.value} of {amount} for {user_id}, balance now {money(new_balance)}"
    )
    return transaction


async def debit(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    description: str,
    booking_id: Optional[UUID] = None,
) -> WalletTransaction:
    return await _apply(db, user_id, amount, TransactionType.DEBIT, description, booking_id)


async def credit(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    description: str,
    booking_id: Optional[UUID] = None,
) -> WalletTransaction:
    return await _apply(db, user_id, amount, TransactionType.CREDIT, description, booking_id)


async def refund(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    description: str,
    booking_id: Optional[UUID] = None,
) -> WalletTransaction:
    return await _apply(db, user_id, amount, TransactionType.REFUND, description, booking_id)


OPERATIONS = {
    TransactionType.CREDIT: credit,
    TransactionType.DEBIT: debit,
    TransactionType.REFUND: refund,
}


async def list_transactions(
    db: AsyncSession,
    user_id: UUID,
    limit: int = 100,
) -> List[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
