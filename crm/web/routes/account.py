from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database import get_db
from crm.core.session import get_current_account
from crm.domain.accounts.models import Account
from crm.domain.accounts.schemas import CurrentAccountOut, SignInHistoryOut
from crm.domain.security.services import get_sign_in_history

router = APIRouter(prefix="/account")


@router.get("/me", response_model=CurrentAccountOut)
async def me(account: Account = Depends(get_current_account)):
    return CurrentAccountOut.from_account(account)


@router.get("/sign-in-history", response_model=list[SignInHistoryOut])
async def sign_in_history(
    limit: int = 20,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Recent sign-in attempts for the signed-in account, newest first."""
    limit = max(1, min(limit, 100))
    return await get_sign_in_history(db, account.id, limit=limit)
