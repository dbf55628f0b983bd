from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime, UniqueConstraint, Index, JSON
)
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy import Enum as SAEnum
from datetime import datetime, timezone
import enum

from .database import Base
from .settings.config import settings


def utcnow() -> datetime:
    # Naive UTC to match DB columns (TIMESTAMP WITHOUT TIME ZONE)
    return datetime.now(timezone.utc).replace(tzinfo=None)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class PairingStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"


class MessageType(str, enum.Enum):
    user_message = "user_message"
    system = "system"
    assistant_response = "assistant_response"


class GenerationStatus(str, enum.Enum):
    pending = "pending"
    ready = "ready"
    failed = "failed"


# ---------------------------
# ACCOUNT
# ---------------------------
class Account(Base):
    __tablename__ = "account"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    partner_name = Column(String(100), nullable=True)
    max_pairings = Column(Integer, nullable=False, default=lambda: settings.DEFAULT_MAX_PAIRINGS)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)  # tombstone; never hard-deleted

    sessions = relationship("RefreshSession", back_populates="account", passive_deletes=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ---------------------------
# PAIRING
# ---------------------------
class Pairing(Base):
    __tablename__ = "pairing"

    id = Column(Integer, primary_key=True, index=True)
    requester_id = Column(Integer, ForeignKey("account.id", ondelete="CASCADE"), index=True, nullable=False)
    partner_id = Column(Integer, ForeignKey("account.id", ondelete="CASCADE"), index=True, nullable=True)
    code = Column(String(16), index=True, nullable=True)  # one-time partner code, cleared on use
    status = Column(SAEnum(PairingStatus), nullable=False, default=PairingStatus.pending)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    requester = relationship("Account", foreign_keys=[requester_id], lazy="joined")
    partner = relationship("Account", foreign_keys=[partner_id], lazy="joined")

    def other_party_id(self, account_id: int):
        return self.partner_id if account_id == self.requester_id else self.requester_id

    def involves(self, account_id: int) -> bool:
        return account_id in (self.requester_id, self.partner_id)


# ---------------------------
# PROGRAMS & STEPS
# ---------------------------
class Program(Base):
    __tablename__ = "program"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("account.id", ondelete="CASCADE"), index=True, nullable=False)
    pairing_id = Column(Integer, ForeignKey("pairing.id", ondelete="SET NULL"), index=True, nullable=True)
    previous_program_id = Column(Integer, ForeignKey("program.id", ondelete="SET NULL"), index=True, nullable=True)
    user_input = Column(Text, nullable=False)
    title = Column(String(300), nullable=True)
    overview = Column(Text, nullable=True)
    steps_required_for_unlock = Column(
        Integer, nullable=False, default=lambda: settings.DEFAULT_STEPS_REQUIRED_FOR_UNLOCK
    )
    next_program_unlocked = Column(Boolean, nullable=False, default=False)
    generation_status = Column(SAEnum(GenerationStatus), nullable=False, default=GenerationStatus.pending)
    generation_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    pairing = relationship("Pairing", lazy="joined")
    previous_program = relationship("Program", remote_side=[id])
    steps = relationship("Step", back_populates="program", order_by="Step.day", passive_deletes=True)


class Step(Base):
    __tablename__ = "program_step"

    id = Column(Integer, primary_key=True, index=True)
    program_id = Column(Integer, ForeignKey("program.id", ondelete="CASCADE"), index=True, nullable=False)
    day = Column(Integer, nullable=False)
    theme = Column(String(200), nullable=False)
    conversation_starter = Column(Text, nullable=False)
    science_behind_it = Column(Text, nullable=True)
    started = Column(Boolean, nullable=False, default=False)  # false -> true once, never back
    started_at = Column(DateTime, nullable=True)
    # compare-and-set marker: set by whichever first contribution wins the crossover
    generation_fired_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    program = relationship("Program", back_populates="steps")
    messages = relationship("Message", back_populates="step", order_by="Message.id", passive_deletes=True)

    __table_args__ = (UniqueConstraint("program_id", "day", name="uq_program_step_day"),)


class Contribution(Base):
    """Durable first-touch record of one account on one step."""
    __tablename__ = "step_contribution"

    id = Column(Integer, primary_key=True)
    step_id = Column(Integer, ForeignKey("program_step.id", ondelete="CASCADE"), index=True, nullable=False)
    account_id = Column(Integer, ForeignKey("account.id", ondelete="CASCADE"), index=True, nullable=False)
    contributed_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("step_id", "account_id", name="uq_step_contribution_once"),)


class Message(Base):
    __tablename__ = "step_message"

    id = Column(Integer, primary_key=True, index=True)
    step_id = Column(Integer, ForeignKey("program_step.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(Integer, ForeignKey("account.id", ondelete="SET NULL"), nullable=True)  # NULL = system
    message_type = Column(SAEnum(MessageType), nullable=False, default=MessageType.user_message)
    content = Column(Text, nullable=False)
    meta = Column("metadata", MutableDict.as_mutable(JSONType), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    step = relationship("Step", back_populates="messages")

    __table_args__ = (Index("ix_step_message_step_created", "step_id", "created_at"),)


# ---------------------------
# SESSIONS
# ---------------------------
class RefreshSession(Base):
    __tablename__ = "refresh_session"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("account.id", ondelete="CASCADE"), index=True, nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)  # sha256 hex of the refresh JWT
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    account = relationship("Account", back_populates="sessions")
