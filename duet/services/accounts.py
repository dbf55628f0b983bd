# duet/services/accounts.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from duet.errors import AccountLocked, EmailTaken, InvalidCredentials, InvalidInput, NotFoundOrAlreadyDeleted
from duet.models import Account, utcnow
from duet.schemas import AccountCreate, AccountUpdate
from duet.services import pairing as pairing_svc
from duet.services.security import SecurityGuard
from duet.services.sessions import SessionTokenService
from duet.users import hash_password, verify_password

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def get_account_by_email(db: AsyncSession, email: str) -> Optional[Account]:
    return (await db.execute(
        select(Account).where(func.lower(Account.email) == normalize_email(email))
    )).scalars().first()


async def register(db: AsyncSession, data: AccountCreate) -> Account:
    email = normalize_email(data.email)
    if len(data.password or "") < MIN_PASSWORD_LENGTH:
        raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if await get_account_by_email(db, email):
        raise EmailTaken()

    acct = Account(
        email=email,
        hashed_password=await hash_password(data.password),
        first_name=(data.first_name or "").strip() or None,
        last_name=(data.last_name or "").strip() or None,
        partner_name=(data.partner_name or "").strip() or None,
    )
    db.add(acct)
    try:
        await db.commit()
    except IntegrityError:
        # lost a race on the unique email index
        await db.rollback()
        raise EmailTaken()
    logger.info("Registered account %s", acct.id)
    return acct


async def authenticate(db: AsyncSession, guard: SecurityGuard, email: str, password: str,
                       caller: str) -> Account:
    """
    Rate limit, then lockout, then a bcrypt check that costs the same whether or not
    the email exists. Every credential failure looks the same to the caller.
    """
    email = normalize_email(email)
    guard.limiter.check("login_failures", caller)

    lock = guard.lockout.lock_info(email)
    if lock:
        raise AccountLocked(retry_after=lock.remaining_seconds)

    acct = await get_account_by_email(db, email)
    usable = acct is not None and not acct.is_deleted and acct.is_active
    ok = await verify_password(password or "", acct.hashed_password if usable else None)

    if not (ok and usable):
        if guard.lockout.record_failure(email):
            raise AccountLocked(retry_after=int(guard.lockout.duration))
        guard.limiter.hit("login_failures", caller)
        raise InvalidCredentials()

    guard.lockout.clear_failures(email)
    return acct


async def update_account(db: AsyncSession, account: Account, data: AccountUpdate) -> Account:
    changes = data.model_dump(exclude_unset=True)
    if "email" in changes:
        email = normalize_email(changes["email"])
        other = await get_account_by_email(db, email)
        if other and other.id != account.id:
            raise EmailTaken()
        changes["email"] = email
    if "password" in changes:
        pw = changes.pop("password") or ""
        if len(pw) < MIN_PASSWORD_LENGTH:
            raise InvalidInput(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        account.hashed_password = await hash_password(pw)
    for k, v in changes.items():
        setattr(account, k, v.strip() if isinstance(v, str) else v)
    await db.commit()
    await db.refresh(account)
    return account


@dataclass
class TombstoneReport:
    account_id: int
    pairings_deleted: int = 0
    sessions_revoked: int = 0
    errors: List[str] = field(default_factory=list)


async def tombstone_account(db: AsyncSession, tokens: SessionTokenService, account_id: int) -> TombstoneReport:
    """
    Soft-delete the account, then cascade to its pairings and sessions. The cascades are
    best-effort: a failure is logged and reported, the tombstone itself stays.
    """
    now = utcnow()
    res = await db.execute(
        update(Account)
        .where(Account.id == account_id, Account.deleted_at.is_(None))
        .values(deleted_at=now, is_active=False, updated_at=now)
    )
    if res.rowcount != 1:
        await db.rollback()
        raise NotFoundOrAlreadyDeleted("Account not found or already deleted")
    await db.commit()

    report = TombstoneReport(account_id=account_id)
    try:
        report.pairings_deleted = await pairing_svc.cascade_soft_delete_for_account(db, account_id)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Pairing cascade failed for tombstoned account %s", account_id)
        report.errors.append("pairings")
    try:
        report.sessions_revoked = await tokens.cascade_revoke_for_account(db, account_id)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Session revocation failed for tombstoned account %s", account_id)
        report.errors.append("sessions")

    logger.info(
        "Account %s tombstoned: %d pairings, %d sessions",
        account_id, report.pairings_deleted, report.sessions_revoked,
    )
    return report
