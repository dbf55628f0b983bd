# duet/services/contributions.py
import logging
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from duet.database import dialect_name
from duet.errors import NotFound
from duet.models import Contribution, Program, Step, utcnow

logger = logging.getLogger(__name__)


@dataclass
class UnlockStatus:
    program_id: int
    started_steps: int
    steps_required: int
    next_program_unlocked: bool


def _insert_for(db: AsyncSession):
    return sqlite_insert if dialect_name(db) == "sqlite" else pg_insert


async def record_first_contribution(db: AsyncSession, step_id: int, account_id: int) -> bool:
    """
    Idempotent first-touch insert. True only for the call that created the row;
    retries and duplicate posts report False. Caller commits.
    """
    insert = _insert_for(db)
    stmt = (
        insert(Contribution.__table__)
        .values(step_id=step_id, account_id=account_id, contributed_at=utcnow())
        .on_conflict_do_nothing(index_elements=["step_id", "account_id"])
        .returning(Contribution.id)
    )
    new_id = (await db.execute(stmt)).scalar_one_or_none()
    return new_id is not None


async def mark_step_started(db: AsyncSession, step_id: int) -> bool:
    """One-way flip; True only for the call that flipped it. Caller commits."""
    now = utcnow()
    res = await db.execute(
        update(Step)
        .where(Step.id == step_id, Step.started.is_(False))
        .values(started=True, started_at=now, updated_at=now)
    )
    return res.rowcount == 1


async def contributors(db: AsyncSession, step_id: int) -> set[int]:
    rows = await db.execute(select(Contribution.account_id).where(Contribution.step_id == step_id))
    return {r[0] for r in rows.all()}


async def started_step_count(db: AsyncSession, program_id: int) -> int:
    return (await db.execute(
        select(func.count(Step.id)).where(Step.program_id == program_id, Step.started.is_(True))
    )).scalar_one()


async def compute_unlock_status(db: AsyncSession, program_id: int, required_step_count: int) -> bool:
    return await started_step_count(db, program_id) >= required_step_count


async def check_and_update_unlock_status(db: AsyncSession, program_id: int) -> UnlockStatus:
    program = (await db.execute(
        select(Program).where(Program.id == program_id).execution_options(populate_existing=True)
    )).scalars().first()
    if not program or program.deleted_at is not None:
        raise NotFound("Program not found")

    started = await started_step_count(db, program_id)
    required = program.steps_required_for_unlock
    unlocked = bool(program.next_program_unlocked)
    if not unlocked and started >= required:
        # never reverts once set
        await db.execute(
            update(Program)
            .where(Program.id == program_id, Program.next_program_unlocked.is_(False))
            .values(next_program_unlocked=True, updated_at=utcnow())
        )
        await db.commit()
        await db.refresh(program)
        unlocked = True
        logger.info("Program %s unlocked (%d/%d steps started)", program_id, started, required)
    return UnlockStatus(program_id, started, required, unlocked)
