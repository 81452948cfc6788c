import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from main import app, get_queue
from repository import QueueRepository, init_db
from services import QueueService


@pytest.fixture
def engine():
    """A fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine):
    return QueueRepository(engine)


@pytest.fixture
def queue(repository):
    return QueueService(repository)


@pytest.fixture
def client(queue):
    app.dependency_overrides[get_queue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()


class FakeRedis:
    """Just enough of the redis client for publishing and rate limiting."""

    def __init__(self):
        self.counters = {}
        self.expiries = {}
        self.published = []

    def get(self, key):
        value = self.counters.get(key)
        return None if value is None else str(value)

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key, seconds):
        self.expiries[key] = seconds

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


@pytest.fixture
def fake_redis():
    return FakeRedis()
