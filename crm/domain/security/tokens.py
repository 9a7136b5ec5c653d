"""Single-use verification and password-reset tokens."""
from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database import utcnow
from crm.core.logging_config import anonymize
from crm.core.result import Err, ErrorKind, Ok, Result
from crm.core.security import generate_verification_token
from crm.domain.security.models import TokenPurpose, VerificationToken

logger = logging.getLogger(__name__)


async def issue_token(
    db: AsyncSession,
    identifier: str,
    purpose: TokenPurpose,
    ttl: timedelta,
) -> VerificationToken:
    """Replace any token of the same purpose for ``identifier`` with a fresh one.

    The caller commits.
    """
    await delete_tokens_for(db, identifier, purpose)
    token = VerificationToken(
        token=generate_verification_token(),
        identifier=identifier,
        purpose=purpose.value,
        expires=utcnow() + ttl,
    )
    db.add(token)
    await db.flush()
    return token


async def delete_tokens_for(
    db: AsyncSession,
    identifier: str,
    purpose: TokenPurpose | None = None,
) -> None:
    stmt = delete(VerificationToken).where(VerificationToken.identifier == identifier)
    if purpose is not None:
        stmt = stmt.where(VerificationToken.purpose == purpose.value)
    await db.execute(stmt)


async def delete_token(db: AsyncSession, token: str) -> None:
    """Delete by value; deleting an already removed token is a no-op."""
    await db.execute(delete(VerificationToken).where(VerificationToken.token == token))


async def find_valid_token(
    db: AsyncSession,
    token: str,
    purpose: TokenPurpose,
) -> Result[VerificationToken]:
    """Return the live token, deleting it (and committing) when it has expired.

    Errors: ``not_found`` when no token of that purpose exists, ``validation``
    with ``reason="expired"`` when it expired.
    """
    result = await db.execute(
        select(VerificationToken).where(
            VerificationToken.token == token,
            VerificationToken.purpose == purpose.value,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        return Err(ErrorKind.NOT_FOUND, "Token not found", reason="not_found")

    if record.expires < utcnow():
        logger.info(
            "Expired %s token removed [identifier=%s]", purpose.value, anonymize(record.identifier)
        )
        await delete_token(db, token)
        await db.commit()
        return Err(ErrorKind.VALIDATION, "Token has expired", reason="expired")

    return Ok(record)


__all__ = ["delete_token", "delete_tokens_for", "find_valid_token", "issue_token"]
