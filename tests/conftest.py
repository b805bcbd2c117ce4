"""Shared fixtures: a controllable clock and a seeded in-memory service graph."""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from ielts_core.app import create_api_app
from ielts_core.config import Settings
from ielts_core.memory_store import MemoryStore
from ielts_core.models import Module
from ielts_core.sample_data import load_sample_tests, load_sample_users
from ielts_core.services import build_services

LISTENING_TEST_ID = "listening-sample-1"
READING_TEST_ID = "reading-sample-1"
WRITING_TEST_ID = "writing-sample-1"

LISTENING_KEY = {
    1: "Rose Cottage",
    2: "Paris",
    3: "3",
    4: "B",
    5: "C",
    6: "factory",
    7: "maps",
    8: "camera",
    9: "C",
    10: "A",
}

READING_KEY = {
    1: "FALSE",
    2: "TRUE",
    3: "NOT GIVEN",
    4: "hybrid",
    5: "gas emissions",
    6: "gardens",
    7: "B",
    8: "bulbs",
}


def qid(test_id, number):
    return f"{test_id}-q{number}"


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    store = MemoryStore()
    load_sample_tests(store)
    load_sample_users(store)
    return store


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def services(settings, store, clock):
    return build_services(settings, store=store, clock=clock)


@pytest.fixture
def registry(services):
    return services.registry


@pytest.fixture
def listening(services):
    return services.manager(Module.LISTENING)


@pytest.fixture
def reading(services):
    return services.manager(Module.READING)


@pytest.fixture
def writing(services):
    return services.manager(Module.WRITING)


@pytest.fixture
def client(services):
    return TestClient(create_api_app(services))


@pytest.fixture
def user_headers():
    return {"X-User-Id": "enterprise-user"}
