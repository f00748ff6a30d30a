# tests/conftest.py
# --- Windows: ensure a selector loop (more compatible with asyncpg DNS resolution)
import sys
import asyncio

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from pathlib import Path

import pytest
import pytest_asyncio
from faker import Faker

# --- Ensure project root (and this folder, for fake_senders) is importable
ROOT = Path(__file__).resolve().parents[1]
for p in (ROOT, Path(__file__).resolve().parent):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from fake_senders import FakeSender  # noqa: E402
from helpers import ADMIN_TOKEN, EMAIL_THEN_SMS, WEBHOOK_SECRET  # noqa: E402
from followup_engine.channels.router import ChannelRouter  # noqa: E402
from followup_engine.common.clock import FrozenClock  # noqa: E402
from followup_engine.config import Settings  # noqa: E402
from followup_engine.domain.models import Student  # noqa: E402
from followup_engine.engine.service import wire_engine  # noqa: E402
from followup_engine.repo.memory_store import InMemoryStore  # noqa: E402
from followup_engine.repo.students import InMemoryStudentDirectory  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="",
        SUPABASE_URL="",
        SUPABASE_SERVICE_ROLE_KEY="",
        WEBHOOK_SECRET=WEBHOOK_SECRET,
        ADMIN_API_TOKEN=ADMIN_TOKEN,
        LIVE_CHANNELS=False,
        SCHEDULER_IN_PROCESS=False,
        RETRY_BACKOFF_SCALE=0.0,
        REPLY_HALTS_ALL_CHANNELS=True,
        ENFORCE_ENROLLMENT_ELIGIBILITY=True,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(clock) -> InMemoryStore:
    return InMemoryStore(clock)


@pytest.fixture
def students() -> InMemoryStudentDirectory:
    return InMemoryStudentDirectory()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def engine(settings, store, students, sender, clock):
    return wire_engine(settings, store=store, students=students, router=ChannelRouter(sender), clock=clock)


@pytest.fixture
def make_student(students):
    f = Faker()

    def _make(**overrides) -> Student:
        data = dict(
            id=str(f.uuid4()),
            full_name=f"{f.first_name()} {f.last_name()}",
            email=f.unique.email(),
            phone="+1555" + f.msisdn()[:7],
            enrollment_statuses=["interested"],
        )
        data.update(overrides)
        return students.add(Student(**data))

    return _make


@pytest.fixture
def student(make_student) -> Student:
    return make_student(full_name="Alice Martin", email="Alice.Martin@Example.com", phone="(555) 555-0101")


@pytest_asyncio.fixture
async def sequence(engine):
    return await engine.sequences.create(
        backend_name="new-student-welcome",
        display_name="New Student Welcome",
        subject="Welcome {{first_name}}!",
        steps=EMAIL_THEN_SMS,
    )



@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient
    from followup_engine.web.server import create_app

    with TestClient(create_app(engine)) as c:
        yield c
