import asyncio

from sqlalchemy import select

from duet.errors import GenerationError
from duet.models import Message, MessageType, Step
from duet.services import contributions
from duet.services.programs import post_step_message
from duet.services.trigger import TriggerState


async def _first_step(db, program):
    return (await db.execute(
        select(Step).where(Step.program_id == program.id).order_by(Step.day)
    )).scalars().first()


async def _system_messages(session_maker, step_id):
    async with session_maker() as s:
        return (await s.execute(
            select(Message)
            .where(Message.step_id == step_id, Message.message_type == MessageType.system)
            .order_by(Message.id)
        )).scalars().all()


async def test_unpaired_program_only_stores_messages(db, make_account, make_program, coordinator,
                                                     step_generator, runner, session_maker):
    a = await make_account()
    program = await make_program(a)
    step = await _first_step(db, program)

    posted = await post_step_message(db, coordinator, a, step.id, "hello")
    assert posted.first_contribution is True
    assert posted.trigger == TriggerState.UNPAIRED
    await runner.drain()
    assert step_generator.calls == []
    assert await _system_messages(session_maker, step.id) == []


async def test_crossover_fires_once_with_ordered_output(db, make_account, make_pairing, make_program,
                                                        coordinator, step_generator, runner, session_maker):
    a = await make_account(first_name="Ana")
    b = await make_account(first_name="Ben")
    pairing = await make_pairing(a, b)
    program = await make_program(a, pairing)
    step = await _first_step(db, program)

    r1 = await post_step_message(db, coordinator, a, step.id, "I liked our walk")
    assert r1.trigger == TriggerState.ONE_PARTY_CONTRIBUTED
    r2 = await post_step_message(db, coordinator, a, step.id, "and the coffee")
    assert (r2.first_contribution, r2.trigger) == (False, TriggerState.NOT_FIRST_CONTRIBUTION)
    await runner.drain()
    assert step_generator.calls == []

    r3 = await post_step_message(db, coordinator, b, step.id, "Me too")
    assert r3.trigger == TriggerState.FIRED
    await runner.drain()
    r4 = await post_step_message(db, coordinator, b, step.id, "Again")
    assert r4.trigger == TriggerState.NOT_FIRST_CONTRIBUTION
    await runner.drain()

    assert len(step_generator.calls) == 1
    context = step_generator.calls[0]
    assert [m["sender_name"] for m in context["messages"]] == ["Ana", "Ana", "Ben"]

    msgs = await _system_messages(session_maker, step.id)
    assert [m.content for m in msgs] == [
        "First reflection for you both.", "Something you share.", "Try this tonight.",
    ]
    assert [m.meta["sequence"] for m in msgs] == [1, 2, 3]
    assert {m.meta["total"] for m in msgs} == {3}
    assert all(m.meta["type"] == "generated_response" and m.sender_id is None for m in msgs)


async def test_concurrent_first_messages_fire_exactly_once(db, make_account, make_pairing, make_program,
                                                           coordinator, step_generator, runner, session_maker):
    """Both partners post their first message at the same time on several steps."""
    a = await make_account()
    b = await make_account()
    pairing = await make_pairing(a, b)
    program = await make_program(a, pairing, days=4)
    steps = (await db.execute(select(Step).where(Step.program_id == program.id))).scalars().all()

    async def post(account, step_id):
        async with session_maker() as s:
            return await post_step_message(s, coordinator, account, step_id, f"from {account.id}")

    for step in steps:
        results = await asyncio.gather(post(a, step.id), post(b, step.id))
        states = sorted(r.trigger.value for r in results)
        assert TriggerState.FIRED.value in states
        assert states.count(TriggerState.FIRED.value) == 1

    await runner.drain()
    assert len(step_generator.calls) == len(steps)
    for step in steps:
        assert len(await _system_messages(session_maker, step.id)) == 3


async def test_fired_marker_blocks_second_fire(db, make_account, make_pairing, make_program,
                                               coordinator, step_generator, runner):
    # both parties present and both callers believe they were first: only one fires
    a = await make_account()
    b = await make_account()
    pairing = await make_pairing(a, b)
    program = await make_program(a, pairing)
    step = await _first_step(db, program)
    await contributions.record_first_contribution(db, step.id, a.id)
    await contributions.record_first_contribution(db, step.id, b.id)
    await db.commit()

    first = await coordinator.on_user_message(db, step.id, a.id, True)
    second = await coordinator.on_user_message(db, step.id, b.id, True)
    await runner.drain()
    assert (first, second) == (TriggerState.FIRED, TriggerState.ALREADY_FIRED)
    assert len(step_generator.calls) == 1


async def test_generation_failure_is_terminal(db, make_account, make_pairing, make_program,
                                              coordinator, step_generator, runner, session_maker,
                                              generation_metrics):
    step_generator.error = GenerationError("upstream 500")
    a = await make_account()
    b = await make_account()
    program = await make_program(a, await make_pairing(a, b))
    step = await _first_step(db, program)

    await post_step_message(db, coordinator, a, step.id, "one")
    r = await post_step_message(db, coordinator, b, step.id, "two")
    assert r.trigger == TriggerState.FIRED
    await runner.drain()

    assert await _system_messages(session_maker, step.id) == []
    assert generation_metrics.failed_generations == 1
    # no retry on later messages
    step_generator.error = None
    await post_step_message(db, coordinator, a, step.id, "three")
    await runner.drain()
    assert len(step_generator.calls) == 1


async def test_generation_timeout(db, make_account, make_pairing, make_program,
                                  coordinator, step_generator, runner, session_maker, generation_metrics):
    coordinator.timeout = 0.05
    step_generator.delay = 1.0
    a = await make_account()
    b = await make_account()
    program = await make_program(a, await make_pairing(a, b))
    step = await _first_step(db, program)

    await post_step_message(db, coordinator, a, step.id, "one")
    await post_step_message(db, coordinator, b, step.id, "two")
    await runner.drain(timeout=5)
    assert await _system_messages(session_maker, step.id) == []
    assert generation_metrics.generation_timeouts == 1


async def test_message_posting_marks_step_started(db, make_account, make_program, coordinator):
    a = await make_account()
    program = await make_program(a, steps_required=1)
    step = await _first_step(db, program)
    step_id, program_id = step.id, program.id
    await post_step_message(db, coordinator, a, step_id, "hi")
    db.expire_all()
    started = (await db.execute(select(Step.started).where(Step.id == step_id))).scalar_one()
    assert started is True
    status = await contributions.check_and_update_unlock_status(db, program_id)
    assert status.next_program_unlocked is True
