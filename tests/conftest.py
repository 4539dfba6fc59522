"""Root-level pytest fixtures for all tests.

Provides:
- In-memory SQLite engine/session shared by the test and by background
  session scopes (StaticPool keeps a single connection)
- A controllable clock and a recording payment rail
- User/agent/listing factories
- A RelayRuntime wired to a RecordingTaskQueue
- A TestClient over an app using all of the above
"""

import os
from collections.abc import Generator
from datetime import timedelta
from unittest.mock import MagicMock

# The module-level engine is built at import; keep it off the user's disk
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agentrelay.api.main import create_app
from agentrelay.config import RelayConfig
from agentrelay.db.connection import get_db, make_session_context
from agentrelay.db.models import (
    Agent,
    AgentStatus,
    Base,
    Listing,
    Profile,
    User,
    utc_now,
)
from agentrelay.services.agent_service import generate_api_key
from agentrelay.services.idempotency import sequential_factory
from agentrelay.services.runtime import RelayRuntime
from agentrelay.services.task_queue import RecordingTaskQueue


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: end-to-end scenarios across several services"
    )


# ============================================================================
# Test doubles
# ============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = utc_now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingRail:
    """Payment rail that records transfers instead of moving money."""

    def __init__(self, fail: bool = False) -> None:
        self.transfers: list[tuple[str, str, float]] = []
        self.fail = fail

    def transfer(self, sender: str, receiver: str, amount: float) -> str:
        if self.fail:
            raise RuntimeError("rail unavailable")
        self.transfers.append((sender, receiver, amount))
        return f"tx-{len(self.transfers)}"


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Test session. Commit it before handing control to session scopes."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_scope(session_factory):
    """get_db_context()-style scope bound to the test engine."""
    return make_session_context(session_factory)


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rail() -> RecordingRail:
    return RecordingRail()


@pytest.fixture
def failing_rail() -> RecordingRail:
    return RecordingRail(fail=True)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def queue() -> RecordingTaskQueue:
    return RecordingTaskQueue()


@pytest.fixture
def chat_channels() -> MagicMock:
    return MagicMock()


@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig()


@pytest.fixture
def runtime(config, session_scope, queue, rail, chat_channels, clock, fake_sleep) -> RelayRuntime:
    return RelayRuntime(
        config,
        session_scope=session_scope,
        queue=queue,
        rail=rail,
        chat_channels=chat_channels,
        id_factory=sequential_factory("thread"),
        clock=clock,
        sleep=fake_sleep,
    )


# ============================================================================
# Data factories
# ============================================================================


@pytest.fixture
def make_user(db: Session):
    """Create a user (and profile) and commit."""

    def _make(username: str, **profile_fields) -> User:
        user = User(username=username)
        user.profile = Profile(display_name=username.title(), **profile_fields)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_agent(db: Session):
    """Create an agent with a known raw API key and commit.

    Returns:
        Callable returning (agent, raw_api_key).
    """

    def _make(
        user: User | None = None,
        name: str = "test-agent",
        status: AgentStatus | None = None,
        gateway_url: str | None = None,
        gateway_token: str | None = None,
        webhook_enabled: bool = False,
    ) -> tuple[Agent, str]:
        generated = generate_api_key()
        if status is None:
            status = AgentStatus.ACTIVE if user is not None else AgentStatus.UNCLAIMED
        agent = Agent(
            name=name,
            api_key_hash=generated.hash,
            api_key_prefix=generated.prefix,
            status=status.value,
            user_id=user.id if user is not None else None,
            gateway_url=gateway_url,
            gateway_token=gateway_token,
            webhook_enabled=webhook_enabled,
        )
        db.add(agent)
        db.commit()
        return agent, generated.key

    return _make


@pytest.fixture
def make_listing(db: Session):
    def _make(seller: User, title: str = "Vintage camera", price: float = 400.0) -> Listing:
        listing = Listing(seller_id=seller.id, title=title, price=price)
        db.add(listing)
        db.commit()
        return listing

    return _make


@pytest.fixture
def alice(make_user) -> User:
    return make_user("alice")


@pytest.fixture
def bob(make_user) -> User:
    return make_user("bob")


# ============================================================================
# API client
# ============================================================================


@pytest.fixture
def app_factory(runtime, db: Session):
    """Build an app wired to the test database and runtime.

    The lifespan is never entered, so the module-level engine and the
    real task queue stay untouched.
    """
    apps = []

    def _build(config: RelayConfig | None = None) -> FastAPI:
        app = create_app(config if config is not None else RelayConfig())
        app.state.runtime = runtime

        def override_get_db():
            try:
                yield db
            finally:
                pass

        app.dependency_overrides[get_db] = override_get_db
        apps.append(app)
        return app

    yield _build
    for app in apps:
        app.dependency_overrides.clear()


@pytest.fixture
def client(app_factory, config: RelayConfig) -> TestClient:
    return TestClient(app_factory(config))


@pytest.fixture
def bearer():
    """Build an Authorization header for a raw agent key."""

    def _headers(key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {key}"}

    return _headers
