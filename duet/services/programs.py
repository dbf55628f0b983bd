# duet/services/programs.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from duet import llm_client
from duet.background import TaskRunner, runner as default_runner
from duet.database import async_session_maker
from duet.errors import (
    Forbidden, GenerationError, GenerationInProgress, GenerationUnavailable, InvalidInput, NotFound,
    NotFoundOrAlreadyDeleted, ProgramAlreadyGenerated, ProgramLocked,
)
from duet.models import (
    Account, GenerationStatus, Message, MessageType, Pairing, PairingStatus, Program, Step, utcnow,
)
from duet.schemas import MessageUpdate, ProgramCreate
from duet.services import contributions
from duet.services.trigger import TriggerCoordinator, TriggerState
from duet.settings.config import settings

logger = logging.getLogger(__name__)

ProgramGenerate = Callable[..., Awaitable[dict]]


def get_program_generator() -> ProgramGenerate:
    return llm_client.generate_program


# ---------------------------
# Access
# ---------------------------
async def _load_program(db: AsyncSession, program_id: int) -> Program:
    program = (await db.execute(
        select(Program).where(Program.id == program_id, Program.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )).scalars().first()
    if not program:
        raise NotFound("Program not found")
    return program


async def _participant_pairing(db: AsyncSession, program: Program, account_id: int) -> Optional[Pairing]:
    if not program.pairing_id:
        return None
    p = (await db.execute(
        select(Pairing).where(
            Pairing.id == program.pairing_id,
            Pairing.status == PairingStatus.accepted,
            Pairing.deleted_at.is_(None),
        )
    )).scalars().first()
    return p if p and p.involves(account_id) else None


async def check_program_access(db: AsyncSession, account_id: int, program_id: int) -> Program:
    """Owner, or a party to the program's accepted and live pairing."""
    program = await _load_program(db, program_id)
    if program.owner_id == account_id:
        return program
    if await _participant_pairing(db, program, account_id):
        return program
    raise Forbidden("Not authorized to access this program")


async def get_program(db: AsyncSession, account_id: int, program_id: int) -> Program:
    return await check_program_access(db, account_id, program_id)


async def list_programs(db: AsyncSession, account_id: int) -> list[Program]:
    shared = select(Pairing.id).where(
        (Pairing.requester_id == account_id) | (Pairing.partner_id == account_id),
        Pairing.status == PairingStatus.accepted,
        Pairing.deleted_at.is_(None),
    )
    rows = (await db.execute(
        select(Program)
        .where(
            Program.deleted_at.is_(None),
            (Program.owner_id == account_id) | Program.pairing_id.in_(shared),
        )
        .order_by(Program.created_at.desc(), Program.id.desc())
    )).scalars().all()
    return list(rows)


async def soft_delete_program(db: AsyncSession, account_id: int, program_id: int) -> None:
    program = await _load_program(db, program_id)
    if program.owner_id != account_id:
        raise Forbidden("Only the program owner can delete it")
    now = utcnow()
    res = await db.execute(
        update(Program)
        .where(Program.id == program_id, Program.deleted_at.is_(None))
        .values(deleted_at=now, updated_at=now)
    )
    if res.rowcount != 1:
        await db.rollback()
        raise NotFoundOrAlreadyDeleted("Program not found or already deleted")
    await db.commit()


# ---------------------------
# Creation and generation
# ---------------------------
async def _partner_name(db: AsyncSession, owner: Account, pairing_id: Optional[int]) -> Optional[str]:
    if owner.partner_name:
        return owner.partner_name
    if not pairing_id:
        return None
    p = await db.get(Pairing, pairing_id)
    if not p or p.partner_id is None:
        return None
    partner = await db.get(Account, p.other_party_id(owner.id))
    return partner.first_name if partner else None


async def generate_program_content(program_id: int, *, generate: ProgramGenerate,
                                   previous_starters: Sequence[str] = (),
                                   session_maker: async_sessionmaker = async_session_maker,
                                   timeout: float = settings.GENERATION_TIMEOUT_SECONDS) -> GenerationStatus:
    """Background job: ask the model for the daily plan and store it as steps."""
    async with session_maker() as db:
        program = await db.get(Program, program_id)
        if program is None:
            return GenerationStatus.failed
        owner = await db.get(Account, program.owner_id)
        partner_name = await _partner_name(db, owner, program.pairing_id)

        try:
            data = await asyncio.wait_for(
                generate(owner.first_name or "", partner_name or "", program.user_input,
                         previous_starters=list(previous_starters) or None),
                timeout=timeout,
            )
        except (GenerationError, asyncio.TimeoutError) as e:
            detail = e.detail if isinstance(e, GenerationError) else "Generation timed out"
            logger.error("Program %s generation failed: %s", program_id, detail)
            llm_client.metrics.record_generation_failure(timed_out=isinstance(e, asyncio.TimeoutError))
            program.generation_status = GenerationStatus.failed
            program.generation_error = detail
            await db.commit()
            return GenerationStatus.failed

        doc = data["program"]
        program.title = (doc.get("title") or "").strip()[:300] or None
        program.overview = (doc.get("overview") or "").strip() or None
        for day in doc["days"]:
            db.add(Step(
                program_id=program.id,
                day=int(day["day"]),
                theme=day["theme"].strip(),
                conversation_starter=day["conversation_starter"].strip(),
                science_behind_it=(day.get("science_behind_it") or "").strip() or None,
            ))
        program.generation_status = GenerationStatus.ready
        program.generation_error = None
        await db.commit()
        logger.info("Program %s generated with %d steps", program_id, len(doc["days"]))
        return GenerationStatus.ready


async def create_program(db: AsyncSession, owner: Account, data: ProgramCreate, *,
                         generate: ProgramGenerate, task_runner: TaskRunner = default_runner,
                         previous_program_id: Optional[int] = None,
                         previous_starters: Sequence[str] = ()) -> Program:
    if data.pairing_id is not None:
        p = (await db.execute(
            select(Pairing).where(Pairing.id == data.pairing_id, Pairing.deleted_at.is_(None))
        )).scalars().first()
        if not p:
            raise NotFound("Pairing not found")
        if not p.involves(owner.id):
            raise Forbidden("You are not part of this pairing")
        if p.status != PairingStatus.accepted:
            raise InvalidInput("Pairing must be accepted before starting a program")

    program = Program(
        owner_id=owner.id,
        pairing_id=data.pairing_id,
        previous_program_id=previous_program_id,
        user_input=data.user_input.strip(),
        steps_required_for_unlock=data.steps_required_for_unlock or settings.DEFAULT_STEPS_REQUIRED_FOR_UNLOCK,
        generation_status=GenerationStatus.pending,
    )
    db.add(program)
    await db.commit()
    await db.refresh(program)

    task_runner.submit(
        generate_program_content(program.id, generate=generate, previous_starters=previous_starters),
        name=f"generate-program-{program.id}",
    )
    return program


async def engaged_starters(db: AsyncSession, program_id: int) -> list[str]:
    """Conversation starters of the program's steps that got at least one user message."""
    has_messages = exists().where(
        Message.step_id == Step.id, Message.message_type == MessageType.user_message,
    )
    rows = await db.execute(
        select(Step.conversation_starter)
        .where(Step.program_id == program_id, has_messages)
        .order_by(Step.day)
    )
    return [r[0] for r in rows.all()]


async def create_next_program(db: AsyncSession, account: Account, previous_program_id: int,
                              data: ProgramCreate, *, generate: ProgramGenerate,
                              task_runner: TaskRunner = default_runner) -> Program:
    previous = await check_program_access(db, account.id, previous_program_id)
    status = await contributions.check_and_update_unlock_status(db, previous.id)
    if not status.next_program_unlocked:
        raise ProgramLocked(
            current_unlock_status={
                "next_program_unlocked": False,
                "started_steps": status.started_steps,
                "steps_required_for_unlock": status.steps_required,
            }
        )

    owner = await db.get(Account, previous.owner_id)
    starters = await engaged_starters(db, previous.id)
    chained = ProgramCreate(
        user_input=data.user_input,
        pairing_id=previous.pairing_id,
        steps_required_for_unlock=data.steps_required_for_unlock,
    )
    # pairing may have been tombstoned since; do not block the chain on it
    if chained.pairing_id is not None:
        live = await db.get(Pairing, chained.pairing_id)
        if not live or live.deleted_at is not None or live.status != PairingStatus.accepted:
            chained.pairing_id = None
    return await create_program(
        db, owner, chained, generate=generate, task_runner=task_runner,
        previous_program_id=previous.id, previous_starters=starters,
    )


async def regenerate_program(db: AsyncSession, account_id: int, program_id: int, *,
                             generate: ProgramGenerate,
                             task_runner: TaskRunner = default_runner) -> Program:
    """Run generation again for a program that never got its steps (usually after a failure)."""
    program = await check_program_access(db, account_id, program_id)
    has_steps = (await db.execute(
        select(Step.id).where(Step.program_id == program.id).limit(1)
    )).scalar_one_or_none() is not None
    if has_steps:
        raise ProgramAlreadyGenerated()
    if not llm_client.is_configured():
        raise GenerationUnavailable()

    # claim the job; a second caller sees status pending and backs off
    res = await db.execute(
        update(Program)
        .where(Program.id == program.id, Program.generation_status != GenerationStatus.pending)
        .values(generation_status=GenerationStatus.pending, generation_error=None, updated_at=utcnow())
    )
    if res.rowcount != 1:
        await db.rollback()
        raise GenerationInProgress()
    await db.commit()

    program = await _load_program(db, program_id)
    starters = await engaged_starters(db, program.previous_program_id) if program.previous_program_id else []
    task_runner.submit(
        generate_program_content(program.id, generate=generate, previous_starters=starters),
        name=f"regenerate-program-{program.id}",
    )
    logger.info("Program %s regeneration requested by account %s", program.id, account_id)
    return program


# ---------------------------
# Steps and messages
# ---------------------------
async def list_steps(db: AsyncSession, account_id: int, program_id: int) -> list[Step]:
    await check_program_access(db, account_id, program_id)
    rows = (await db.execute(
        select(Step).where(Step.program_id == program_id).order_by(Step.day)
    )).scalars().all()
    return list(rows)


async def get_step(db: AsyncSession, account_id: int, step_id: int) -> Step:
    step = (await db.execute(
        select(Step).where(Step.id == step_id).execution_options(populate_existing=True)
    )).scalars().first()
    if not step:
        raise NotFound("Program step not found")
    await check_program_access(db, account_id, step.program_id)
    return step


async def list_step_messages(db: AsyncSession, account_id: int, step_id: int) -> list[Message]:
    await get_step(db, account_id, step_id)
    rows = (await db.execute(
        select(Message).where(Message.step_id == step_id).order_by(Message.created_at, Message.id)
    )).scalars().all()
    return list(rows)


@dataclass
class PostedMessage:
    message: Message
    first_contribution: bool
    trigger: TriggerState


async def post_step_message(db: AsyncSession, coordinator: TriggerCoordinator, account: Account,
                            step_id: int, content: str) -> PostedMessage:
    step = await get_step(db, account.id, step_id)
    text = (content or "").strip()
    if not text:
        raise InvalidInput("Message content is required")

    msg = Message(step_id=step.id, sender_id=account.id, message_type=MessageType.user_message, content=text)
    db.add(msg)
    await db.flush()
    first = await contributions.record_first_contribution(db, step.id, account.id)
    await contributions.mark_step_started(db, step.id)
    # commit before the crossover check so a concurrent partner sees this contribution
    await db.commit()
    await db.refresh(msg)

    await contributions.check_and_update_unlock_status(db, step.program_id)
    state = await coordinator.on_user_message(db, step.id, account.id, first)
    return PostedMessage(message=msg, first_contribution=first, trigger=state)


async def update_step_message(db: AsyncSession, account_id: int, step_id: int, message_id: int,
                              data: MessageUpdate) -> Message:
    await get_step(db, account_id, step_id)
    msg = (await db.execute(
        select(Message).where(Message.id == message_id, Message.step_id == step_id)
    )).scalars().first()
    if not msg:
        raise NotFound("Message not found")
    if msg.sender_id != account_id or msg.message_type != MessageType.user_message:
        raise Forbidden("You can only edit your own messages")
    changes = data.model_dump(exclude_unset=True)
    if "content" in changes and changes["content"] is not None:
        msg.content = changes["content"].strip()
    await db.commit()
    await db.refresh(msg)
    return msg
