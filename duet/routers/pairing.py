from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..errors import Forbidden
from ..models import Account, PairingStatus
from ..schemas import AcceptCodeRequest, PairingCodeRead, PairingStats, PairingSummary
from ..services import pairing as pairing_svc
from ..utils import get_current_account

router = APIRouter(prefix="/api/pairing", tags=["pairing"])


@router.post("/request", response_model=PairingCodeRead, status_code=status.HTTP_201_CREATED)
async def request_pairing(account: Account = Depends(get_current_account), db: AsyncSession = Depends(get_db)):
    return await pairing_svc.request_pairing(db, account.id)


@router.post("/accept", response_model=PairingSummary)
async def accept_pairing(
    payload: AcceptCodeRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    p = await pairing_svc.accept_by_code(db, account.id, payload.code)
    return pairing_svc.summarize(p, account.id)


@router.post("/{pairing_id}/reject", response_model=PairingSummary)
async def reject_pairing(
    pairing_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    p = await pairing_svc.reject_pairing(db, account.id, pairing_id)
    return pairing_svc.summarize(p, account.id)


@router.get("", response_model=list[PairingSummary])
async def list_pairings(
    status: Optional[PairingStatus] = None,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    rows = await pairing_svc.list_pairings(db, account.id, status)
    return [pairing_svc.summarize(p, account.id) for p in rows]


@router.get("/stats", response_model=PairingStats)
async def pairing_stats(account: Account = Depends(get_current_account), db: AsyncSession = Depends(get_db)):
    return await pairing_svc.pairing_stats(db, account.id)


@router.get("/deleted/all", response_model=list[PairingSummary])
async def list_deleted_pairings(account: Account = Depends(get_current_account), db: AsyncSession = Depends(get_db)):
    rows = await pairing_svc.list_pairings_including_deleted(db, account.id)
    return [pairing_svc.summarize(p, account.id) for p in rows if p.deleted_at is not None]


@router.get("/{pairing_id}", response_model=PairingSummary)
async def get_pairing(
    pairing_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    p = await pairing_svc.get_pairing(db, pairing_id)
    if not p.involves(account.id):
        raise Forbidden("Not authorized to view this pairing")
    return pairing_svc.summarize(p, account.id)


@router.delete("/{pairing_id}", response_model=PairingSummary)
async def delete_pairing(
    pairing_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    p = await pairing_svc.get_pairing_including_deleted(db, pairing_id)
    if not p.involves(account.id):
        raise Forbidden("Not authorized to delete this pairing")
    p = await pairing_svc.soft_delete_pairing(db, pairing_id)
    return pairing_svc.summarize(p, account.id)


@router.post("/{pairing_id}/restore", response_model=PairingSummary)
async def restore_pairing(
    pairing_id: int,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    p = await pairing_svc.get_pairing_including_deleted(db, pairing_id)
    if not p.involves(account.id):
        raise Forbidden("Not authorized to restore this pairing")
    p = await pairing_svc.restore_pairing(db, pairing_id)
    return pairing_svc.summarize(p, account.id)
