import logging

from passlib.hash import bcrypt

from .background import run_sync
from .settings.config import settings


logger = logging.getLogger(__name__)


SECRET = (settings.SECRET or "").strip()
if not SECRET or SECRET == "CHANGE_ME_SECRET":
    raise RuntimeError(
        "SECRET environment variable must be set to a strong value; the default placeholder is not allowed."
    )

# -------------------------
# Password hashing
# -------------------------
_hasher = bcrypt.using(rounds=settings.BCRYPT_ROUNDS)

# Verified against when the email is unknown so both paths cost one bcrypt check.
_DUMMY_HASH = _hasher.hash("duet-timing-equaliser")


async def hash_password(password: str) -> str:
    return await run_sync(_hasher.hash, password)


async def verify_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        await run_sync(_hasher.verify, password, _DUMMY_HASH)
        return False
    try:
        return await run_sync(_hasher.verify, password, hashed)
    except ValueError:
        logger.warning("Stored password hash could not be parsed")
        return False
