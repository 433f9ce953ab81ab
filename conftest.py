import os
import tempfile
from datetime import datetime, timedelta, timezone

os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="email_queue_logs_")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RESEND_API_KEY"] = ""
os.environ["SMTP_USERNAME"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from email_queue.config import Settings
from email_queue.database import Base, create_session_factory
from email_queue import models  # noqa: F401
from email_queue.exceptions import DeliveryRejected
from email_queue.services.circuit_breaker import CircuitBreaker
from email_queue.store import MessageStore
from email_queue.transport import Transport


class StepClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


class ScriptedTransport(Transport):
    """Transport whose provider answers are queued up by the test.

    Each outcome is either a provider id or an exception to raise from the
    provider call; once the script runs out every send succeeds.
    """

    name = "scripted"

    def __init__(self, outcomes=None, credential="re_test_key", circuit=None):
        super().__init__(credential, circuit or CircuitBreaker(failure_threshold=100))
        self.outcomes = list(outcomes or [])
        self.sent = []

    async def _deliver(self, message):
        self.sent.append(message)
        outcome = self.outcomes.pop(0) if self.outcomes else f"msg_{len(self.sent)}"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def rejected(reason="Resend API error 422: invalid recipient", transient=False):
    return DeliveryRejected(reason, transient=transient)


def make_payload(**overrides):
    payload = {
        "to": "player@example.com",
        "toName": "Player One",
        "subject": "Registration confirmed",
        "html": "<p>See you at the <b>tournament</b></p>",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(engine, clock):
    return MessageStore(create_session_factory(engine), clock=clock)


@pytest.fixture
def config():
    return Settings(
        database_url="sqlite://",
        resend_api_key="",
        default_from_email="noreply@example.org",
        default_from_name="Federation",
        max_attempts=3,
    )


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def seed(store):
    """Insert a message straight into the store."""

    def _seed(**fields):
        values = {
            "to_email": "player@example.com",
            "from_email": "noreply@example.org",
            "from_name": "Federation",
            "subject": "Hello",
            "html_content": "<p>Hello</p>",
            "priority": 2,
            "max_attempts": 3,
        }
        values.update(fields)
        return store.insert(values)

    return _seed
