import asyncio
import os
import tempfile

# Settings are read at import time; configure before importing duet.
_DB_DIR = tempfile.mkdtemp(prefix="duet-tests-")
os.environ["SECRET"] = "test-secret-0123456789abcdef0123456789abcdef"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/duet-test.db"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from duet import llm_client
from duet.background import TaskRunner, get_task_runner
from duet.database import Base, async_session_maker, engine
from duet.models import Account, GenerationStatus, Pairing, PairingStatus, Program, Step
from duet.services.programs import get_program_generator
from duet.services.security import InMemoryCounterStore, SecurityGuard, get_security_guard
from duet.services.sessions import SessionTokenService, get_token_service
from duet.services.trigger import TriggerCoordinator, get_coordinator
from duet.settings.config import settings
from duet.users import hash_password


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStepGenerator:
    """Stands in for the model call made after a step crossover."""

    def __init__(self):
        self.calls = []
        self.outputs = ["First reflection for you both.", "   ", "Something you share.", "Try this tonight."]
        self.delay = 0.0
        self.error = None

    async def __call__(self, context):
        self.calls.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.outputs)


class FakeProgramGenerator:
    def __init__(self):
        self.calls = []
        self.error = None

    async def __call__(self, user_name, partner_name, user_input, previous_starters=None):
        self.calls.append({
            "user_name": user_name,
            "partner_name": partner_name,
            "user_input": user_input,
            "previous_starters": previous_starters,
        })
        if self.error:
            raise self.error
        days = [
            {
                "day": i,
                "theme": f"Theme {i}",
                "conversation_starter": f"Day {i}: what made you feel close to your partner this week?",
                "science_behind_it": "Sharing small moments of connection builds trust between partners over time.",
            }
            for i in range(1, settings.PROGRAM_DAYS + 1)
        ]
        return {"program": {"title": "Two weeks together", "overview": "Talk a little every day.", "days": days}}


# ---------------------------
# Store
# ---------------------------
@pytest_asyncio.fixture(autouse=True)
async def schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture(autouse=True)
def generation_metrics():
    llm_client.metrics.reset()
    yield llm_client.metrics


@pytest_asyncio.fixture
async def db(schema):
    async with async_session_maker() as session:
        yield session


@pytest.fixture
def session_maker():
    return async_session_maker


# ---------------------------
# Collaborators
# ---------------------------
@pytest_asyncio.fixture
async def runner():
    r = TaskRunner()
    yield r
    await r.drain(timeout=10)
    await r.shutdown()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return SecurityGuard(InMemoryCounterStore(), clock=clock)


@pytest.fixture
def tokens(runner):
    return SessionTokenService(task_runner=runner)


@pytest.fixture
def step_generator():
    return FakeStepGenerator()


@pytest.fixture
def program_generator():
    return FakeProgramGenerator()


@pytest.fixture
def coordinator(step_generator, runner):
    return TriggerCoordinator(step_generator, task_runner=runner, timeout=2.0)


# ---------------------------
# Factories
# ---------------------------
_seq = {"n": 0}


@pytest.fixture
def make_account(db):
    async def _make(email=None, password="correct-horse", first_name=None, max_pairings=1):
        _seq["n"] += 1
        n = _seq["n"]
        acct = Account(
            email=email or f"user{n}@example.com",
            hashed_password=await hash_password(password),
            first_name=first_name or f"User{n}",
            max_pairings=max_pairings,
        )
        db.add(acct)
        await db.commit()
        return acct
    return _make


@pytest.fixture
def make_pairing(db):
    async def _make(a, b, status=PairingStatus.accepted):
        p = Pairing(requester_id=a.id, partner_id=b.id, status=status, code=None)
        db.add(p)
        await db.commit()
        return p
    return _make


@pytest.fixture
def make_program(db):
    async def _make(owner, pairing=None, days=3, steps_required=2):
        program = Program(
            owner_id=owner.id,
            pairing_id=pairing.id if pairing else None,
            user_input="We want to talk more after work.",
            title="Test program",
            steps_required_for_unlock=steps_required,
            generation_status=GenerationStatus.ready,
        )
        db.add(program)
        await db.flush()
        for d in range(1, days + 1):
            db.add(Step(
                program_id=program.id,
                day=d,
                theme=f"Theme {d}",
                conversation_starter=f"Tell your partner about a good moment from day {d}.",
            ))
        await db.commit()
        return program
    return _make


# ---------------------------
# HTTP
# ---------------------------
@pytest_asyncio.fixture
async def app(guard, tokens, runner, coordinator, program_generator):
    from duet.main import app as fastapi_app

    fastapi_app.dependency_overrides[get_security_guard] = lambda: guard
    fastapi_app.dependency_overrides[get_token_service] = lambda: tokens
    fastapi_app.dependency_overrides[get_task_runner] = lambda: runner
    fastapi_app.dependency_overrides[get_coordinator] = lambda: coordinator
    fastapi_app.dependency_overrides[get_program_generator] = lambda: program_generator
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def auth_headers(tokens):
    def _headers(account):
        return {"Authorization": f"Bearer {tokens.create_access_token(account)}"}
    return _headers
