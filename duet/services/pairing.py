# duet/services/pairing.py
import logging
import secrets, string
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from duet.errors import (
    AlreadyPaired, AlreadyProcessed, CodeGenerationExhausted, DuplicatePendingRequest, Forbidden,
    NotFound, NotFoundOrAlreadyDeleted, QuotaExceeded, SelfPairing,
)
from duet.models import Account, Pairing, PairingStatus, utcnow
from duet.settings.config import settings

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class PairingCode:
    pairing_id: int
    code: str


def _partner_code(n: int = settings.PAIRING_CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(n))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _touches(account_id: int):
    return or_(Pairing.requester_id == account_id, Pairing.partner_id == account_id)


async def _get_account(db: AsyncSession, account_id: int) -> Account:
    acct = await db.get(Account, account_id)
    if not acct or acct.is_deleted:
        raise NotFound("User not found")
    return acct


# ---------------------------
# Queries
# ---------------------------
async def count_accepted_pairings(db: AsyncSession, account_id: int) -> int:
    return (await db.execute(
        select(func.count(Pairing.id)).where(
            _touches(account_id),
            Pairing.status == PairingStatus.accepted,
            Pairing.deleted_at.is_(None),
        )
    )).scalar_one()


async def get_pairing(db: AsyncSession, pairing_id: int) -> Pairing:
    p = (await db.execute(
        select(Pairing).where(Pairing.id == pairing_id, Pairing.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )).scalars().first()
    if not p:
        raise NotFound("Pairing not found")
    return p


async def get_pairing_including_deleted(db: AsyncSession, pairing_id: int) -> Pairing:
    p = (await db.execute(
        select(Pairing).where(Pairing.id == pairing_id).execution_options(populate_existing=True)
    )).scalars().first()
    if not p:
        raise NotFound("Pairing not found")
    return p


async def list_pairings(db: AsyncSession, account_id: int,
                        status: Optional[PairingStatus] = None) -> list[Pairing]:
    q = select(Pairing).where(_touches(account_id), Pairing.deleted_at.is_(None))
    if status is not None:
        q = q.where(Pairing.status == status)
    rows = (await db.execute(q.order_by(Pairing.created_at.desc(), Pairing.id.desc()))).scalars().all()
    return list(rows)


async def list_pairings_including_deleted(db: AsyncSession, account_id: int) -> list[Pairing]:
    rows = (await db.execute(
        select(Pairing).where(_touches(account_id)).order_by(Pairing.id.desc())
    )).scalars().all()
    return list(rows)


async def active_pairing_between(db: AsyncSession, a_id: int, b_id: int) -> Optional[Pairing]:
    return (await db.execute(
        select(Pairing).where(
            or_(
                and_(Pairing.requester_id == a_id, Pairing.partner_id == b_id),
                and_(Pairing.requester_id == b_id, Pairing.partner_id == a_id),
            ),
            Pairing.status.in_([PairingStatus.pending, PairingStatus.accepted]),
            Pairing.deleted_at.is_(None),
        )
    )).scalars().first()


async def pending_code_for(db: AsyncSession, account_id: int) -> Optional[Pairing]:
    return (await db.execute(
        select(Pairing).where(
            Pairing.requester_id == account_id,
            Pairing.status == PairingStatus.pending,
            Pairing.code.isnot(None),
            Pairing.partner_id.is_(None),
            Pairing.deleted_at.is_(None),
        )
    )).scalars().first()


async def pairing_stats(db: AsyncSession, account_id: int) -> dict:
    acct = await _get_account(db, account_id)
    accepted = await count_accepted_pairings(db, account_id)
    pending = await list_pairings(db, account_id, PairingStatus.pending)
    return {
        "max_pairings": acct.max_pairings,
        "current_pairings": accepted,
        "available_slots": max(0, acct.max_pairings - accepted),
        "pending_requests": len(pending),
    }


# ---------------------------
# Commands
# ---------------------------
async def _code_in_use(db: AsyncSession, code: str) -> bool:
    return (await db.execute(
        select(Pairing.id).where(
            Pairing.code == code,
            Pairing.status == PairingStatus.pending,
            Pairing.deleted_at.is_(None),
        ).limit(1)
    )).scalar_one_or_none() is not None


async def request_pairing(db: AsyncSession, account_id: int) -> PairingCode:
    acct = await _get_account(db, account_id)
    if await count_accepted_pairings(db, account_id) >= acct.max_pairings:
        raise QuotaExceeded()
    if await pending_code_for(db, account_id):
        raise DuplicatePendingRequest()

    code = None
    for _ in range(settings.PAIRING_CODE_MAX_ATTEMPTS):
        candidate = _partner_code()
        if not await _code_in_use(db, candidate):
            code = candidate
            break
    if code is None:
        logger.error("Partner code generation exhausted %d attempts", settings.PAIRING_CODE_MAX_ATTEMPTS)
        raise CodeGenerationExhausted()

    p = Pairing(requester_id=account_id, code=code, status=PairingStatus.pending)
    db.add(p)
    await db.commit()
    logger.info("Pairing %s requested by account %s", p.id, account_id)
    return PairingCode(pairing_id=p.id, code=code)


async def accept_by_code(db: AsyncSession, account_id: int, code: str) -> Pairing:
    code = normalize_code(code)
    if not code:
        raise NotFound("No pending pairing found for this partner code")
    pending = (await db.execute(
        select(Pairing).where(
            Pairing.code == code,
            Pairing.status == PairingStatus.pending,
            Pairing.partner_id.is_(None),
            Pairing.deleted_at.is_(None),
        )
    )).scalars().first()
    if not pending:
        raise NotFound("No pending pairing found for this partner code")
    if pending.requester_id == account_id:
        raise SelfPairing()

    acct = await _get_account(db, account_id)
    if await count_accepted_pairings(db, account_id) >= acct.max_pairings:
        raise QuotaExceeded()
    # the requester may have filled its slots since the code was issued
    requester = await _get_account(db, pending.requester_id)
    if await count_accepted_pairings(db, requester.id) >= requester.max_pairings:
        raise QuotaExceeded("This partner has reached their maximum number of pairings")
    existing = await active_pairing_between(db, pending.requester_id, account_id)
    if existing and existing.id != pending.id:
        raise AlreadyPaired()

    # Single conditional update: concurrent acceptors race here, one wins.
    res = await db.execute(
        update(Pairing)
        .where(
            Pairing.id == pending.id,
            Pairing.code == code,
            Pairing.status == PairingStatus.pending,
            Pairing.partner_id.is_(None),
            Pairing.deleted_at.is_(None),
        )
        .values(partner_id=account_id, code=None, status=PairingStatus.accepted, updated_at=utcnow())
    )
    if res.rowcount != 1:
        await db.rollback()
        raise NotFound("No pending pairing found for this partner code")
    await db.commit()
    logger.info("Pairing %s accepted by account %s", pending.id, account_id)
    return await get_pairing(db, pending.id)


async def reject_pairing(db: AsyncSession, account_id: int, pairing_id: int) -> Pairing:
    p = await get_pairing(db, pairing_id)
    if not p.involves(account_id):
        raise Forbidden("You are not authorized to reject this pairing")
    if p.status != PairingStatus.pending:
        raise AlreadyProcessed()
    res = await db.execute(
        update(Pairing)
        .where(Pairing.id == pairing_id, Pairing.status == PairingStatus.pending)
        .values(status=PairingStatus.rejected, code=None, updated_at=utcnow())
    )
    if res.rowcount != 1:
        await db.rollback()
        raise AlreadyProcessed()
    await db.commit()
    return await get_pairing(db, pairing_id)


async def soft_delete_pairing(db: AsyncSession, pairing_id: int) -> Pairing:
    now = utcnow()
    res = await db.execute(
        update(Pairing)
        .where(Pairing.id == pairing_id, Pairing.deleted_at.is_(None))
        .values(deleted_at=now, updated_at=now)
    )
    if res.rowcount != 1:
        await db.rollback()
        raise NotFoundOrAlreadyDeleted("Pairing not found or already deleted")
    await db.commit()
    return await get_pairing_including_deleted(db, pairing_id)


async def restore_pairing(db: AsyncSession, pairing_id: int) -> Pairing:
    res = await db.execute(
        update(Pairing)
        .where(Pairing.id == pairing_id, Pairing.deleted_at.isnot(None))
        .values(deleted_at=None, updated_at=utcnow())
    )
    if res.rowcount != 1:
        await db.rollback()
        raise NotFound("Pairing not found or not deleted")
    await db.commit()
    return await get_pairing(db, pairing_id)


async def cascade_soft_delete_for_account(db: AsyncSession, account_id: int) -> int:
    now = utcnow()
    res = await db.execute(
        update(Pairing)
        .where(_touches(account_id), Pairing.deleted_at.is_(None))
        .values(deleted_at=now, updated_at=now)
    )
    await db.commit()
    return res.rowcount or 0


def summarize(p: Pairing, viewer_id: int) -> dict:
    """Pairing as seen by ``viewer_id``: only the other party is described."""
    other = p.partner if viewer_id == p.requester_id else p.requester
    return {
        "id": p.id,
        "status": p.status.value if isinstance(p.status, PairingStatus) else p.status,
        "partner_code": p.code,
        "is_requester": viewer_id == p.requester_id,
        "created_at": p.created_at,
        "updated_at": p.updated_at,
        "deleted_at": p.deleted_at,
        "partner": None if other is None else {
            "id": other.id,
            "first_name": other.first_name,
            "last_name": other.last_name,
            "email": other.email,
        },
    }
