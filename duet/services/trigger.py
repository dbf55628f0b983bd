# duet/services/trigger.py
"""
Fires content generation once per step, the moment the second partner's first
message lands.

Per step: NoContribution -> OnePartyContributed -> Fired.

Contributions are committed before ``on_user_message`` runs, so whichever
first contribution is chronologically last always sees both parties. When
both first contributions race through the check at the same time, both may
see both parties; the ``generation_fired_at`` compare-and-set lets exactly
one of them submit the job.
"""
import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from duet import llm_client
from duet.background import TaskRunner, runner as default_runner
from duet.database import async_session_maker
from duet.errors import GenerationError
from duet.models import Account, Message, MessageType, Pairing, PairingStatus, Program, Step, utcnow
from duet.services.contributions import contributors
from duet.settings.config import settings

logger = logging.getLogger(__name__)

Generator = Callable[[dict], Awaitable[list]]


class TriggerState(str, enum.Enum):
    UNPAIRED = "unpaired"
    NOT_FIRST_CONTRIBUTION = "not_first_contribution"
    ONE_PARTY_CONTRIBUTED = "one_party_contributed"
    FIRED = "fired"
    ALREADY_FIRED = "already_fired"


class TriggerCoordinator:
    def __init__(self, generate: Optional[Generator] = None, *,
                 session_maker: async_sessionmaker = async_session_maker,
                 task_runner: TaskRunner = default_runner,
                 timeout: float = settings.GENERATION_TIMEOUT_SECONDS):
        self.generate = generate or llm_client.generate_step_responses
        self.session_maker = session_maker
        self.runner = task_runner
        self.timeout = timeout

    async def _accepted_pairing(self, db: AsyncSession, step: Step) -> Optional[Pairing]:
        program = await db.get(Program, step.program_id)
        if not program or not program.pairing_id:
            return None
        pairing = (await db.execute(
            select(Pairing).where(Pairing.id == program.pairing_id)
            .execution_options(populate_existing=True)
        )).scalars().first()
        if (not pairing or pairing.deleted_at is not None
                or pairing.status != PairingStatus.accepted or pairing.partner_id is None):
            return None
        return pairing

    async def on_user_message(self, db: AsyncSession, step_id: int, account_id: int,
                              first_contribution: bool) -> TriggerState:
        """Call after the message and contribution are committed. Never waits on generation."""
        step = await db.get(Step, step_id)
        if step is None:
            return TriggerState.UNPAIRED
        pairing = await self._accepted_pairing(db, step)
        if pairing is None or not pairing.involves(account_id):
            return TriggerState.UNPAIRED
        if not first_contribution:
            return TriggerState.NOT_FIRST_CONTRIBUTION

        other_id = pairing.other_party_id(account_id)
        if other_id not in await contributors(db, step_id):
            return TriggerState.ONE_PARTY_CONTRIBUTED

        res = await db.execute(
            update(Step)
            .where(Step.id == step_id, Step.generation_fired_at.is_(None))
            .values(generation_fired_at=utcnow())
        )
        if res.rowcount != 1:
            await db.rollback()
            logger.info("Step %s crossover already fired", step_id)
            return TriggerState.ALREADY_FIRED
        await db.commit()

        logger.info("Step %s crossover: both partners present, scheduling generation", step_id)
        self.runner.submit(
            self.run_generation(step_id, pairing.requester_id, pairing.partner_id),
            name=f"generate-step-{step_id}",
        )
        return TriggerState.FIRED

    async def build_context(self, db: AsyncSession, step_id: int, party_ids: tuple) -> dict:
        step = await db.get(Step, step_id)
        program = await db.get(Program, step.program_id)
        names = {}
        for n, pid in enumerate(party_ids, start=1):
            acct = await db.get(Account, pid)
            names[pid] = llm_client.sanitize_prompt_input(acct.first_name if acct else None, 50) or f"Partner {n}"

        rows = (await db.execute(
            select(Message)
            .where(
                Message.step_id == step_id,
                Message.message_type == MessageType.user_message,
                Message.sender_id.in_(party_ids),
            )
            .order_by(Message.created_at, Message.id)
        )).scalars().all()

        return {
            "program": {"title": llm_client.sanitize_prompt_input(program.title, 300)},
            "step": {
                "day": step.day,
                "theme": llm_client.sanitize_prompt_input(step.theme, 200),
                "conversation_starter": llm_client.sanitize_prompt_input(step.conversation_starter, 1000),
            },
            "users": [{"id": pid, "name": names[pid]} for pid in party_ids],
            "messages": [
                {"sender_name": names.get(m.sender_id), "content": llm_client.sanitize_prompt_input(m.content)}
                for m in rows
            ],
        }

    async def run_generation(self, step_id: int, *party_ids: int) -> int:
        """Generate and persist ordered system messages. Returns how many were written."""
        async with self.session_maker() as db:
            context = await self.build_context(db, step_id, tuple(party_ids))
            try:
                outputs = await asyncio.wait_for(self.generate(context), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.error("Generation for step %s timed out after %ss", step_id, self.timeout)
                llm_client.metrics.record_generation_failure(timed_out=True)
                return 0
            except GenerationError as e:
                logger.error("Generation for step %s failed: %s", step_id, e.detail)
                llm_client.metrics.record_generation_failure()
                return 0

            texts = [t.strip() for t in (outputs or []) if isinstance(t, str) and t.strip()]
            total = len(texts)
            day = context["step"]["day"]
            for seq, text in enumerate(texts, start=1):
                db.add(Message(
                    step_id=step_id,
                    sender_id=None,
                    message_type=MessageType.system,
                    content=text,
                    meta={"type": "generated_response", "sequence": seq, "total": total, "step_day": day},
                ))
                # one commit per message; earlier ones stay if a later write fails
                await db.commit()
            logger.info("Stored %d generated messages for step %s", total, step_id)
            return total


coordinator = TriggerCoordinator()


def get_coordinator() -> TriggerCoordinator:
    return coordinator
