from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Account
from ..schemas import AccountRead, AccountUpdate, TombstoneRead
from ..services import accounts as accounts_svc
from ..services.sessions import SessionTokenService, get_token_service
from ..utils import get_current_account

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=AccountRead)
async def read_me(account: Account = Depends(get_current_account)):
    return account


@router.patch("/me", response_model=AccountRead)
async def update_me(
    payload: AccountUpdate,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await accounts_svc.update_account(db, account, payload)


@router.delete("/me", response_model=TombstoneRead)
async def delete_me(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    tokens: SessionTokenService = Depends(get_token_service),
):
    return await accounts_svc.tombstone_account(db, tokens, account.id)
