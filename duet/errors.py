"""Error taxonomy shared by the service layer.

Services raise these; ``duet.main`` renders them as JSON with the class'
``status_code`` and stable ``code``. Routers never translate messages by
string matching.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class DuetError(Exception):
    status_code = 500
    code = "internal_error"
    default_detail = "Internal error"

    def __init__(self, detail: Optional[str] = None, **extra: Any):
        self.detail = detail or self.default_detail
        self.extra: Dict[str, Any] = extra
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.detail}
        body.update(self.extra)
        return body


# --- not found ---
class NotFound(DuetError):
    status_code = 404
    code = "not_found"
    default_detail = "Not found"


class NotFoundOrAlreadyDeleted(NotFound):
    code = "not_found_or_already_deleted"
    default_detail = "Not found or already deleted"


# --- authorization ---
class Forbidden(DuetError):
    status_code = 403
    code = "forbidden"
    default_detail = "Not allowed"


class Unauthorized(DuetError):
    status_code = 401
    code = "unauthorized"
    default_detail = "Access token required"
    www_authenticate = 'Bearer realm="duet"'


class TokenExpired(Unauthorized):
    code = "token_expired"
    default_detail = "Token expired"
    www_authenticate = 'Bearer realm="duet", error="invalid_token", error_description="The access token expired"'


class InvalidToken(Unauthorized):
    code = "invalid_token"
    default_detail = "Invalid token"
    www_authenticate = 'Bearer realm="duet", error="invalid_token", error_description="The access token is invalid"'


class InvalidCredentials(Unauthorized):
    code = "invalid_credentials"
    default_detail = "Invalid email or password"


class InvalidOrExpiredToken(DuetError):
    status_code = 403
    code = "invalid_or_expired_token"
    default_detail = "Invalid or expired refresh token"


class AccountLocked(DuetError):
    status_code = 423
    code = "account_locked"
    default_detail = "Account temporarily locked due to repeated failed login attempts"

    def __init__(self, retry_after: int, detail: Optional[str] = None):
        super().__init__(detail, retry_after=int(retry_after))
        self.retry_after = int(retry_after)


class RateLimited(DuetError):
    status_code = 429
    code = "rate_limited"
    default_detail = "Too many requests, please try again later"

    def __init__(self, retry_after: int):
        super().__init__(None, retry_after=int(retry_after))
        self.retry_after = int(retry_after)


# --- conflicts ---
class Conflict(DuetError):
    status_code = 409
    code = "conflict"
    default_detail = "Conflict"


class QuotaExceeded(Conflict):
    code = "quota_exceeded"
    default_detail = "You have reached your maximum number of pairings"


class DuplicatePendingRequest(Conflict):
    code = "duplicate_pending_request"
    default_detail = "You already have a pending pairing request. Cancel it first or wait for someone to accept it."


class AlreadyPaired(Conflict):
    code = "already_paired"
    default_detail = "You are already paired with this user"


class AlreadyProcessed(Conflict):
    code = "already_processed"
    default_detail = "Pairing request has already been processed"


class EmailTaken(Conflict):
    code = "email_taken"
    default_detail = "Email already exists"


class ProgramLocked(Conflict):
    code = "program_locked"
    default_detail = "Previous program must be unlocked before generating next program"


class ProgramAlreadyGenerated(Conflict):
    code = "program_already_generated"
    default_detail = "Program already has steps"


class GenerationInProgress(Conflict):
    code = "generation_in_progress"
    default_detail = "Program generation is already running"


# --- input ---
class InvalidInput(DuetError):
    status_code = 400
    code = "invalid_input"
    default_detail = "Invalid input"


class SelfPairing(InvalidInput):
    code = "self_pairing"
    default_detail = "You cannot accept your own pairing request"


# --- upstream / store ---
class GenerationError(DuetError):
    status_code = 502
    code = "generation_error"
    default_detail = "Content generation failed"


class GenerationUnavailable(DuetError):
    status_code = 503
    code = "generation_unavailable"
    default_detail = "Content generation is not configured"


class StoreError(DuetError):
    status_code = 503
    code = "store_error"
    default_detail = "Storage temporarily unavailable"


class CodeGenerationExhausted(StoreError):
    code = "code_generation_exhausted"
    default_detail = "Failed to generate unique partner code"
