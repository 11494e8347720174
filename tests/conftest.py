"""Shared test fixtures."""

import os

# Configure before any app module reads settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "development")

import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.channels import ChannelProvider, ChannelRegistry, SendResult
from app.core.config import Settings
from app.core.database import init_db, make_session_context
from app.core.directory import Recipient, StaticRecipientDirectory
from app.core.engine import build_engine
from app.core.observability import RecordingSink
from app.models.deadline import ComplianceDeadline
from app.schemas.enums import Channel, FailureReason

NOW = datetime(2026, 3, 2, 12, 0, 0)


class FakeProvider(ChannelProvider):
    """Scriptable channel provider.

    ``outcomes`` is consumed one per call; when empty, ``default`` is used.
    An outcome is a SendResult, an exception to raise, or a float delay in
    seconds before succeeding.
    """

    def __init__(self, channel: Channel, default=None, max_length: int | None = None) -> None:
        self.channel = channel
        self.max_length = max_length
        self.default = default or SendResult(success=True, provider_message_id="msg")
        self.outcomes: list = []
        self.calls: list[dict] = []
        self.before_send = None

    async def send(self, contact, subject, message, dedup_key):
        self.calls.append({"contact": contact, "subject": subject, "message": message, "dedup_key": dedup_key})
        if self.before_send is not None:
            await self.before_send()
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, (int, float)):
            await asyncio.sleep(outcome)
            return SendResult(success=True, provider_message_id="slow")
        return outcome


def failing(reason: FailureReason = FailureReason.SERVICE_UNAVAILABLE) -> SendResult:
    return SendResult.failed("gateway said no", reason)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    """Settings with fast, deterministic delivery behavior."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        scheduler_enabled=False,
        max_retries=3,
        retry_base_seconds=60,
        retry_max_seconds=3600,
        retry_jitter_seconds=0,
        provider_timeout_seconds=0.2,
        circuit_failure_threshold=100,
        critical_risk_extra_roles=[],
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)


@pytest.fixture
def db_context(session_maker):
    """get_db_context equivalent bound to the test database."""
    return make_session_context(session_maker)


@pytest.fixture
def providers():
    return {channel: FakeProvider(channel) for channel in Channel}


@pytest.fixture
def registry(providers):
    return ChannelRegistry(providers)


@pytest.fixture
def directory():
    users = [
        Recipient(
            "owner-1",
            "Olivia Owner",
            {"email": "owner@example.com", "sms": "+15550000001", "push": "device-owner"},
        ),
        Recipient("owner-2", "Email Only", {"email": "only@example.com"}),
        Recipient("officer-1", "Oscar Officer", {"email": "officer@example.com", "sms": "+15550000002"}),
        Recipient("dept-1", "Dana Dept", {"email": "dept1@example.com"}),
        Recipient("dept-2", "Dev Dept", {"email": "dept2@example.com", "push": "device-dept2"}),
        Recipient("exec-1", "Erin Exec", {"email": "exec@example.com", "sms": "+15550000003"}),
    ]
    return StaticRecipientDirectory(
        users=users,
        roles={"compliance_officer": ["officer-1"], "auditor": ["exec-1"]},
        departments={"compliance": ["dept-1", "dept-2"]},
        all_stakeholders=["owner-1", "officer-1", "dept-1", "dept-2", "exec-1"],
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(settings, db_context, registry, directory, sink):
    return build_engine(
        settings,
        session_factory=db_context,
        registry=registry,
        directory=directory,
        sink=sink,
    )


@pytest.fixture
def add_deadline(db_context, now):
    """Insert a deadline; keyword arguments override the defaults."""

    def _add(**overrides) -> ComplianceDeadline:
        values = {
            "id": str(uuid4()),
            "title": "SOX quarterly attestation",
            "category": "SOX",
            "due_at": now + timedelta(days=20),
            "status": "in_progress",
            "completion_percentage": 50,
            "priority": "medium",
            "owner_id": "owner-1",
        }
        values.update(overrides)
        deadline = ComplianceDeadline(**values)
        with db_context() as db:
            db.add(deadline)
        return deadline

    return _add


@pytest.fixture
def update_deadline(db_context):
    def _update(deadline_id: str, **changes) -> None:
        with db_context() as db:
            deadline = db.get(ComplianceDeadline, deadline_id)
            for key, value in changes.items():
                setattr(deadline, key, value)

    return _update


@pytest.fixture
def client(engine, session_maker):
    """Test client wired to the test engine and database."""
    from fastapi.testclient import TestClient

    from app.core.database import get_db
    from app.main import app

    def override_get_db():
        db = session_maker()
        try:
            yield db
        finally:
            db.close()

    app.state.engine = engine
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.engine = None
