from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List
from datetime import datetime

from .models import GenerationStatus, MessageType, PairingStatus

# =========================
# ACCOUNT SCHEMAS
# =========================
class AccountBase(BaseModel):
    email: EmailStr
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    partner_name: Optional[str] = Field(default=None, max_length=100)

class AccountCreate(AccountBase):
    password: str = Field(min_length=8, max_length=128)

class AccountRead(AccountBase):
    id: int
    max_pairings: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class AccountUpdate(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    partner_name: Optional[str] = Field(default=None, max_length=100)


class TombstoneRead(BaseModel):
    account_id: int
    pairings_deleted: int
    sessions_revoked: int
    errors: List[str] = []

    class Config:
        from_attributes = True


# =========================
# AUTH SCHEMAS
# =========================
class LoginRequest(BaseModel):
    email: str
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_ttl: int
    refresh_ttl: int

    class Config:
        from_attributes = True

class LoginResponse(TokenResponse):
    user: AccountRead


# =========================
# PAIRING SCHEMAS
# =========================
class PairingParty(BaseModel):
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: str

class PairingSummary(BaseModel):
    id: int
    status: PairingStatus
    partner_code: Optional[str] = None
    is_requester: bool
    partner: Optional[PairingParty] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

class PairingCodeRead(BaseModel):
    pairing_id: int
    code: str

    class Config:
        from_attributes = True

class AcceptCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)

class PairingStats(BaseModel):
    max_pairings: int
    current_pairings: int
    available_slots: int
    pending_requests: int


# =========================
# PROGRAM SCHEMAS
# =========================
class ProgramCreate(BaseModel):
    user_input: str = Field(min_length=1, max_length=5000)
    pairing_id: Optional[int] = None
    steps_required_for_unlock: Optional[int] = Field(default=None, ge=1)

class ProgramRead(BaseModel):
    id: int
    owner_id: int
    pairing_id: Optional[int] = None
    previous_program_id: Optional[int] = None
    user_input: str
    title: Optional[str] = None
    overview: Optional[str] = None
    steps_required_for_unlock: int
    next_program_unlocked: bool
    generation_status: GenerationStatus
    generation_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class UnlockStatusRead(BaseModel):
    program_id: int
    started_steps: int
    steps_required: int
    next_program_unlocked: bool

    class Config:
        from_attributes = True


class GenerationMetricsRead(BaseModel):
    configured: bool
    model: str
    total_requests: int
    successful_requests: int
    failed_requests: int
    rate_limit_errors: int
    average_response_time: float
    failed_generations: int
    generation_timeouts: int


# =========================
# STEP / MESSAGE SCHEMAS
# =========================
class StepRead(BaseModel):
    id: int
    program_id: int
    day: int
    theme: str
    conversation_starter: str
    science_behind_it: Optional[str] = None
    started: bool
    started_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=5000)

class MessageUpdate(BaseModel):
    content: Optional[str] = Field(default=None, min_length=1, max_length=5000)

class MessageRead(BaseModel):
    id: int
    step_id: int
    sender_id: Optional[int] = None
    message_type: MessageType
    content: str
    metadata: Optional[dict] = Field(default=None, validation_alias="meta")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class PostMessageResult(BaseModel):
    message: MessageRead
    first_contribution: bool
    trigger: str
