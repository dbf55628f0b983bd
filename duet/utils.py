from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from .database import get_db
from .errors import InvalidToken, Unauthorized
from .models import Account
from .services.security import SecurityGuard, get_security_guard
from .services.sessions import SessionTokenService, get_token_service

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> str:
    """Best-effort caller address; honours the first X-Forwarded-For hop."""
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        first = fwd.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


# -------------------------
# Rate limits
# -------------------------
async def api_rate_limit(request: Request, guard: SecurityGuard = Depends(get_security_guard)) -> None:
    guard.limiter.hit("api", client_ip(request))


async def auth_rate_limit(request: Request, guard: SecurityGuard = Depends(get_security_guard)) -> None:
    guard.limiter.hit("auth", client_ip(request))


# -------------------------
# Current account
# -------------------------
async def get_current_account(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
    tokens: SessionTokenService = Depends(get_token_service),
) -> Account:
    if creds is None or not creds.credentials:
        raise Unauthorized()
    claims = tokens.verify_access_token(creds.credentials)
    account = await db.get(Account, int(claims["sub"]))
    # tombstoned or deactivated accounts keep valid-looking tokens until expiry
    if account is None or account.is_deleted or not account.is_active:
        raise InvalidToken()
    tokens.schedule_extend(account.id)
    return account
