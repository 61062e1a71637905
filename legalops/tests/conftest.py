"""
Test fixtures - in-memory SQLite database, a recording notifier and an HTTP client
"""
from datetime import date

import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from legalops.database import create_tables, drop_tables, get_db, make_engine, make_session_factory
from legalops.main import app
from legalops.models.organization import User, Department, ExternalContact
from legalops.services.engine import build_engine
from legalops.services.notifier import Notifier, get_notifier


class RecordingNotifier(Notifier):
    """Keeps every message instead of sending it; can be told to fail for given addresses"""

    def __init__(self):
        self.sent = []
        self.attempts = []
        self.reject = set()
        self.explode = set()

    async def send(self, recipient_email, template_kind, payload) -> bool:
        self.attempts.append((recipient_email, template_kind, payload))
        if recipient_email in self.explode:
            raise ConnectionError("mail relay unreachable")
        if recipient_email in self.reject:
            return False
        self.sent.append((recipient_email, template_kind, payload))
        return True


@pytest_asyncio.fixture()
async def session_factory():
    """Fresh in-memory SQLite database per test"""
    engine = make_engine("sqlite+aiosqlite:///:memory:", echo=False)
    await create_tables(engine)

    yield make_session_factory(engine)

    await drop_tables(engine)

    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def seed_data(db_session):
    """
    Baseline organization: a legal owner, two departments with heads and one
    department without a head. Returned as plain ids so tests stay valid
    after a rollback expires loaded objects.
    """
    owner = User(email="legal@acme.test", full_name="Lena Legal")
    finance_head = User(email="finance.head@acme.test", full_name="Fay Finance")
    ops_head = User(email="ops.head@acme.test", full_name="Omar Ops")
    db_session.add_all([owner, finance_head, ops_head])
    await db_session.flush()

    finance = Department(name="Finance", head_user_id=finance_head.id)
    operations = Department(name="Operations", head_user_id=ops_head.id)
    marketing = Department(name="Marketing", head_user_id=None)
    auditor = ExternalContact(name="Alex Auditor", email="alex@audit.test", organization="Audit LLP")
    db_session.add_all([finance, operations, marketing, auditor])
    await db_session.commit()

    return {
        "owner_id": owner.id,
        "finance_head_id": finance_head.id,
        "ops_head_id": ops_head.id,
        "finance_id": finance.id,
        "operations_id": operations.id,
        "marketing_id": marketing.id,
        "auditor_id": auditor.id,
    }


@pytest_asyncio.fixture()
async def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture()
async def compliance(db_session, notifier):
    """Services wired to the test session and the recording notifier"""
    return build_engine(db_session, notifier=notifier, base_url="https://app.test")


@pytest_asyncio.fixture()
async def run_payload(seed_data):
    return {
        "title": "Quarterly data protection review",
        "description": "Confirm your department follows the data handling policy",
        "frequency": "once",
        "start_date": date(2024, 1, 1),
        "due_date": date(2024, 1, 31),
        "created_by": seed_data["owner_id"],
        "department_ids": [seed_data["finance_id"], seed_data["operations_id"]],
        "questions": [
            {"question_text": "Is customer data encrypted at rest?", "question_type": "yesno"},
            {"question_text": "Rate your team's policy awareness", "question_type": "score", "max_score": 5},
            {
                "question_text": "How is access reviewed?",
                "question_type": "multiple",
                "options": ["Monthly", "Quarterly", "Never"],
            },
            {"question_text": "Anything to add?", "question_type": "text", "is_required": False},
        ],
    }


@pytest_asyncio.fixture()
async def client(db_session, seed_data, notifier):
    """httpx AsyncClient bound to the FastAPI app"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac

    app.dependency_overrides.clear()
