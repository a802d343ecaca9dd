from __future__ import annotations

from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

from leadflow.engine import Engine, build_engine
from leadflow.main import create_app
from leadflow.models import AgentCreateRequest, LeadCreateRequest, utc_now
from leadflow.settings import Settings, load_settings
from leadflow.store import InMemoryStore


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.start = start or utc_now()
        self.offset = timedelta()
        self.elapsed = 0.0
        self.sleeps: list[float] = []
        self.on_sleep: Optional[Callable[[int], None]] = None
        self._lock = Lock()

    def __call__(self) -> datetime:
        return self.start + self.offset + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.elapsed += seconds
            self.sleeps.append(seconds)
            calls = len(self.sleeps)
        if self.on_sleep:
            self.on_sleep(calls)

    def advance(self, **kwargs: float) -> None:
        self.offset += timedelta(**kwargs)


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("BACKGROUND_JOBS_ENABLED", "false")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("RETRY_BACKOFF_SECONDS", "60")
    monkeypatch.setenv("RETRY_BACKOFF_MAX_SECONDS", "3600")
    monkeypatch.setenv("WEBHOOK_MATCH_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("WEBHOOK_MATCH_RETRY_SECONDS", "30")
    return load_settings()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def engine(store: InMemoryStore, settings: Settings, clock: FakeClock) -> Engine:
    return build_engine(
        store,
        settings,
        clock=clock,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )


def add_agent(
    engine: Engine,
    agent_id: str,
    *,
    company_id: str = "acme",
    capacity: Optional[int] = None,
    available: bool = True,
) -> str:
    engine.loads.register_agent(
        AgentCreateRequest(
            company_id=company_id,
            name=f"Agent {agent_id}",
            agent_id=agent_id,
            is_available=available,
            max_leads_capacity=capacity,
        )
    )
    return agent_id


def add_lead(engine: Engine, *, company_id: str = "acme", **fields) -> str:
    fields.setdefault("name", "Test Lead")
    lead = engine.store.create_lead(LeadCreateRequest(company_id=company_id, **fields))
    return lead.id


@pytest.fixture()
def make_agent(engine: Engine) -> Callable[..., str]:
    def factory(agent_id: str, **kwargs) -> str:
        return add_agent(engine, agent_id, **kwargs)

    return factory


@pytest.fixture()
def make_lead(engine: Engine) -> Callable[..., str]:
    def factory(**fields) -> str:
        return add_lead(engine, **fields)

    return factory
