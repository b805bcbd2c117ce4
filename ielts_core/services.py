"""Explicit wiring of stores, policies and managers; no module-level singletons."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from ielts_core.config import Settings
from ielts_core.database import MySQLStore
from ielts_core.feedback import FeedbackService, WritingGrader, make_client
from ielts_core.memory_store import MemoryStore
from ielts_core.models import Module, utcnow
from ielts_core.quota import QuotaPolicy
from ielts_core.registry import GlobalSessionRegistry
from ielts_core.sample_data import SAMPLE_USERS, load_sample_tests, load_sample_users
from ielts_core.sessions import (
    ListeningSessionManager,
    ModuleSessionManager,
    ReadingSessionManager,
    WritingSessionManager,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: object
    registry: GlobalSessionRegistry
    quota: QuotaPolicy
    managers: dict[Module, ModuleSessionManager]

    def manager(self, module: Module) -> ModuleSessionManager:
        return self.managers[module]


def create_store(settings: Settings):
    if settings.storage_backend == "mysql":
        store = MySQLStore(settings.db_config)
        store.init_db()
        logger.info("Using MySQL storage at %s/%s", settings.db_host, settings.db_name)
        return store
    if settings.storage_backend != "memory":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")

    store = MemoryStore()
    load_sample_tests(store)
    load_sample_users(store)
    logger.info(
        "Using in-memory storage seeded with sample tests and demo users: %s",
        ", ".join(SAMPLE_USERS),
    )
    return store


def build_services(settings: Settings, store=None, clock=utcnow, client=None) -> Services:
    if store is None:
        store = create_store(settings)
    if client is None:
        client = make_client(settings.openai_api_key)
    if client is None:
        logger.info("No OpenAI key configured; using template feedback and heuristic writing bands")

    registry = GlobalSessionRegistry(store, clock=clock)
    quota = QuotaPolicy(store, free_limits=settings.free_limits, clock=clock)
    feedback = FeedbackService(client=client, model=settings.openai_model)
    common = {
        "feedback": feedback,
        "cooldown": timedelta(hours=settings.cooldown_hours),
        "clock": clock,
    }

    managers = {
        Module.LISTENING: ListeningSessionManager(store, registry, quota, **common),
        Module.READING: ReadingSessionManager(store, registry, quota, **common),
        Module.WRITING: WritingSessionManager(
            store, registry, quota,
            grader=WritingGrader(client=client, model=settings.openai_model),
            **common,
        ),
    }
    return Services(settings=settings, store=store, registry=registry, quota=quota, managers=managers)
