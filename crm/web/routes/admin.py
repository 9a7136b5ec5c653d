import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.authorization import (
    Authorizer,
    get_authorizer,
    require_analytics_access,
    require_user_management,
)
from crm.core.database import get_db
from crm.core.result import unwrap
from crm.domain.accounts import services
from crm.domain.accounts.schemas import (
    AccountCreate,
    AccountOut,
    AccountUpdate,
    SignInActivityOut,
)
from crm.domain.security.services import summarize_sign_in_activity
from crm.services.mailer import Mailer, get_mailer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.get("/users", response_model=list[AccountOut])
async def list_users(
    authorizer: Authorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await services.list_accounts(db, authorizer))


@router.post("/users", response_model=AccountOut, status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: AccountCreate,
    authorizer: Authorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    """Create an account; managers are limited to sales representatives."""
    result = await services.create_account(
        db,
        authorizer,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        role=payload.role,
        verified=payload.verified,
    )
    return unwrap(result)


@router.get("/users/{account_id}", response_model=AccountOut)
async def get_user(
    account_id: str,
    authorizer: Authorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await services.get_account(db, authorizer, account_id))


@router.put("/users/{account_id}", response_model=AccountOut)
async def update_user(
    account_id: str,
    payload: AccountUpdate,
    authorizer: Authorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    changes = services.AccountChanges(
        name=payload.name,
        role=payload.role,
        is_active=payload.is_active,
        password=payload.password,
    )
    return unwrap(await services.update_account(db, authorizer, account_id, changes))


@router.delete("/users/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    account_id: str,
    authorizer: Authorizer = Depends(get_authorizer),
    db: AsyncSession = Depends(get_db),
):
    unwrap(await services.delete_account(db, authorizer, account_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users/{account_id}/verify-email", response_model=AccountOut)
async def verify_user_email(
    account_id: str,
    authorizer: Authorizer = Depends(require_user_management),
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """Mark the account verified and send the account-activated e-mail."""
    return unwrap(await services.admin_verify_email(db, authorizer, account_id, mailer))


@router.get("/sign-in-activity", response_model=SignInActivityOut)
async def sign_in_activity(
    authorizer: Authorizer = Depends(require_analytics_access),
    db: AsyncSession = Depends(get_db),
):
    summary = await summarize_sign_in_activity(db)
    return SignInActivityOut.model_validate(summary)
