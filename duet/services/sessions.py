# duet/services/sessions.py
"""Access/refresh token lifecycle.

Access tokens are short-lived JWTs checked on every request. Refresh tokens
are longer-lived JWTs whose sha256 digest is stored in ``refresh_session``;
each refresh swaps the stored digest in one conditional UPDATE, so a refresh
token can be used once. Activity pushes the stored expiry forward (sliding
session) from a background task.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi_users.jwt import decode_jwt, generate_jwt
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from duet.background import TaskRunner, runner as default_runner
from duet.database import async_session_maker
from duet.errors import InvalidOrExpiredToken, InvalidToken, TokenExpired
from duet.models import Account, RefreshSession, utcnow
from duet.settings.config import settings
from duet.users import SECRET

logger = logging.getLogger(__name__)

ACCESS_AUDIENCE = "duet:access"
REFRESH_AUDIENCE = "duet:refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_ttl: int
    refresh_ttl: int
    token_type: str = "bearer"


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class SessionTokenService:
    def __init__(self, *, secret: str = SECRET, refresh_secret: Optional[str] = None,
                 access_ttl: int = settings.ACCESS_TOKEN_TTL_SECONDS,
                 refresh_ttl: int = settings.REFRESH_TOKEN_TTL_SECONDS,
                 sliding_horizon: int = settings.SESSION_SLIDING_HORIZON_SECONDS,
                 session_maker: async_sessionmaker = async_session_maker,
                 task_runner: TaskRunner = default_runner):
        self.secret = secret
        self.refresh_secret = refresh_secret or settings.refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.sliding_horizon = sliding_horizon
        self.session_maker = session_maker
        self.runner = task_runner

    # -------------------------
    # Signing
    # -------------------------
    def create_access_token(self, account: Account, lifetime_seconds: Optional[int] = None) -> str:
        data = {
            "sub": str(account.id),
            "email": account.email,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "aud": ACCESS_AUDIENCE,
        }
        return generate_jwt(data, self.secret, lifetime_seconds or self.access_ttl)

    def create_refresh_token(self, account_id: int, lifetime_seconds: Optional[int] = None) -> str:
        # jti keeps two tokens minted in the same second distinct
        data = {"sub": str(account_id), "jti": secrets.token_urlsafe(16), "aud": REFRESH_AUDIENCE}
        return generate_jwt(data, self.refresh_secret, lifetime_seconds or self.refresh_ttl)

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        """Decode an access token; ``TokenExpired`` vs ``InvalidToken`` drives the challenge."""
        try:
            claims = decode_jwt(token, self.secret, [ACCESS_AUDIENCE])
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except jwt.PyJWTError:
            raise InvalidToken()
        if not str(claims.get("sub", "")).isdigit():
            raise InvalidToken()
        return claims

    def _verify_refresh_token(self, token: str) -> int:
        try:
            claims = decode_jwt(token, self.refresh_secret, [REFRESH_AUDIENCE])
        except jwt.PyJWTError:
            raise InvalidOrExpiredToken()
        sub = str(claims.get("sub", ""))
        if not sub.isdigit():
            raise InvalidOrExpiredToken()
        return int(sub)

    # -------------------------
    # Lifecycle
    # -------------------------
    async def issue_tokens(self, db: AsyncSession, account: Account) -> TokenPair:
        """Sign a fresh pair and make it the account's only refresh session."""
        access = self.create_access_token(account)
        refresh = self.create_refresh_token(account.id)
        await db.execute(delete(RefreshSession).where(RefreshSession.account_id == account.id))
        db.add(RefreshSession(
            account_id=account.id,
            token_hash=token_digest(refresh),
            expires_at=utcnow() + timedelta(seconds=self.refresh_ttl),
        ))
        await db.commit()
        return TokenPair(access, refresh, self.access_ttl, self.refresh_ttl)

    async def refresh(self, db: AsyncSession, refresh_token: str) -> TokenPair:
        account_id = self._verify_refresh_token(refresh_token)
        account = await db.get(Account, account_id)
        if account is None or account.is_deleted or not account.is_active:
            raise InvalidOrExpiredToken()

        new_refresh = self.create_refresh_token(account_id)
        now = utcnow()
        res = await db.execute(
            update(RefreshSession)
            .where(
                RefreshSession.token_hash == token_digest(refresh_token),
                RefreshSession.account_id == account_id,
                RefreshSession.expires_at > now,
            )
            .values(
                token_hash=token_digest(new_refresh),
                expires_at=now + timedelta(seconds=self.refresh_ttl),
                updated_at=now,
            )
        )
        if res.rowcount != 1:
            await db.rollback()
            raise InvalidOrExpiredToken("Refresh token not found or expired")
        await db.commit()
        return TokenPair(self.create_access_token(account), new_refresh, self.access_ttl, self.refresh_ttl)

    async def logout(self, db: AsyncSession, refresh_token: str) -> bool:
        res = await db.execute(
            delete(RefreshSession).where(RefreshSession.token_hash == token_digest(refresh_token))
        )
        await db.commit()
        return res.rowcount > 0

    async def cascade_revoke_for_account(self, db: AsyncSession, account_id: int) -> int:
        res = await db.execute(delete(RefreshSession).where(RefreshSession.account_id == account_id))
        await db.commit()
        return res.rowcount or 0

    async def extend_on_activity(self, account_id: int) -> int:
        """Push unexpired sessions for the account to now + horizon. Never raises."""
        try:
            async with self.session_maker() as db:
                now = utcnow()
                res = await db.execute(
                    update(RefreshSession)
                    .where(RefreshSession.account_id == account_id, RefreshSession.expires_at > now)
                    .values(expires_at=now + timedelta(seconds=self.sliding_horizon), updated_at=now)
                )
                await db.commit()
                return res.rowcount or 0
        except Exception:  # noqa: BLE001
            logger.exception("Sliding session extension failed for account %s", account_id)
            return 0

    def schedule_extend(self, account_id: int) -> None:
        self.runner.submit(self.extend_on_activity(account_id), name=f"extend-session-{account_id}")

    async def cleanup_expired(self, db: AsyncSession) -> int:
        res = await db.execute(delete(RefreshSession).where(RefreshSession.expires_at <= utcnow()))
        await db.commit()
        return res.rowcount or 0


token_service = SessionTokenService()


def get_token_service() -> SessionTokenService:
    return token_service
