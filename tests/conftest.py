"""Pytest configuration and shared fixtures."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from registry_guard.database import Base
from registry_guard.models.audit import AuditEvent  # noqa: F401
from registry_guard.models.domain import Alias, Entity, GroupAccess, MetadataEntry  # noqa: F401
from registry_guard.models.enums import Privilege
from registry_guard.services.audit import SqlAuditSink
from registry_guard.services.challenge import ChallengeService
from registry_guard.services.collaborators import Actor, Hooks, LoginRegistry, StoreSessionDirectory
from registry_guard.services.dispatcher import CommandDispatcher
from registry_guard.services.storage import SqlEmailQuota, SqlEntityStore
from registry_guard.services.workflow import RegistryWorkflow

ALICE_PASSWORD = "alice-pass-1"
EMAIL_LIMIT = 2


class FakeClock:
    """Settable time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingHooks(Hooks):
    """Remembers every notification in call order."""

    def __init__(self):
        self.events = []

    def on_entity_dropped(self, entity):
        self.events.append(("dropped", entity.name))

    def on_registration_verified(self, entity, actor):
        self.events.append(("verified", entity.name))

    def on_login(self, session_name, entity):
        self.events.append(("login", session_name, entity.name))

    def hold_name(self, name):
        self.events.append(("hold", name))

    def wallops(self, text):
        self.events.append(("wallops", text))

    def on_bad_password(self, actor, entity):
        self.events.append(("bad_password", actor.name, entity.name))

    def of(self, kind):
        return [e for e in self.events if e[0] == kind]


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def store(db_session):
    return SqlEntityStore(db_session)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest.fixture
def logins():
    return LoginRegistry()


@pytest.fixture
def sessions(store, logins):
    return StoreSessionDirectory(store, logins)


@pytest.fixture
def challenges(clock):
    return ChallengeService(secret="test-secret", window_seconds=3600, clock=clock)


@pytest.fixture
def workflow(db_session, store, sessions, hooks, challenges, clock):
    return RegistryWorkflow(
        store=store,
        sessions=sessions,
        hooks=hooks,
        audit=SqlAuditSink(db_session),
        quota=SqlEmailQuota(db_session, EMAIL_LIMIT),
        challenges=challenges,
        service_name="NickServ",
        nick_ownership=True,
        clock=clock,
    )


@pytest.fixture
def dispatcher(workflow, store):
    return CommandDispatcher(workflow, store)


@pytest.fixture
def alice(store, db_session):
    account = store.create_account("alice", email="alice@example.org", password=ALICE_PASSWORD)
    db_session.commit()
    return account


@pytest.fixture
def alice_actor():
    """A session logged in as alice."""
    return Actor(name="alice", account="alice", source="alice@198.51.100.7")


@pytest.fixture
def admin_actor():
    return Actor(name="oper", account="oper", privileges=frozenset({Privilege.USER_ADMIN}))
