"""
services/wallet/router.py
Wallet balance reads and admin ledger operations.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.wallet import ledger
from shared.middleware.auth import (
    ensure_acting_for,
    get_admin_flag,
    get_optional_token,
    require_admin,
)
from shared.models.models import Profile
from shared.schemas.schemas import (
    WalletResponse,
    WalletTransactionRequest,
    WalletTransactionResponse,
)
from shared.utils.errors import UnauthorizedError

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/{user_id}", response_model=WalletResponse)
async def get_wallet(
    user_id: UUID,
    token=Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
):
    if token is None and not is_admin:
        raise UnauthorizedError("Admin key or bearer token required")
    ensure_acting_for(token, user_id, is_admin)

    profile = await db.get(Profile, user_id)
    if profile is None:
        raise ledger.WalletOwnerNotFound()
    transactions = await ledger.list_transactions(db, user_id)
    return WalletResponse(
        user_id=profile.id,
        balance=profile.wallet_balance,
        transactions=[WalletTransactionResponse.model_validate(t) for t in transactions],
    )


@router.post(
    "/transactions",
    response_model=WalletTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_transaction(
    data: WalletTransactionRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Credit, debit or refund. Debits never take a balance below zero."""
    operation = ledger.OPERATIONS[data.transaction_type]
    transaction = await operation(
        db, data.user_id, data.amount, data.description, data.booking_id
    )
    await db.commit()
    return transaction
