from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Account
from ..schemas import AccountCreate, AccountRead, LoginRequest, LoginResponse, RefreshRequest, TokenResponse
from ..services import accounts as accounts_svc
from ..services.security import SecurityGuard, get_security_guard
from ..services.sessions import SessionTokenService, get_token_service
from ..utils import auth_rate_limit, client_ip, get_current_account

router = APIRouter(prefix="/api", tags=["auth"])


@router.post("/users", response_model=AccountRead, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(auth_rate_limit)])
async def register(payload: AccountCreate, db: AsyncSession = Depends(get_db)):
    return await accounts_svc.register(db, payload)


@router.post("/login", response_model=LoginResponse, dependencies=[Depends(auth_rate_limit)])
async def login(
    payload: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    guard: SecurityGuard = Depends(get_security_guard),
    tokens: SessionTokenService = Depends(get_token_service),
):
    account = await accounts_svc.authenticate(db, guard, payload.email, payload.password, client_ip(request))
    pair = await tokens.issue_tokens(db, account)
    return LoginResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_ttl=pair.access_ttl,
        refresh_ttl=pair.refresh_ttl,
        user=AccountRead.model_validate(account),
    )


@router.post("/refresh", response_model=TokenResponse, dependencies=[Depends(auth_rate_limit)])
async def refresh(
    payload: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    tokens: SessionTokenService = Depends(get_token_service),
):
    return await tokens.refresh(db, payload.refresh_token)


@router.post("/logout", dependencies=[Depends(auth_rate_limit)])
async def logout(
    payload: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    tokens: SessionTokenService = Depends(get_token_service),
):
    revoked = await tokens.logout(db, payload.refresh_token)
    return {"ok": True, "revoked": revoked}


@router.get("/profile", response_model=AccountRead)
async def profile(account: Account = Depends(get_current_account)):
    return account
