"""Shared fixtures: a controllable clock and seeded stores."""

import pytest

from governor.models import Agent, OrgGuardrails, Organization
from governor.payment import MockPaymentProvider
from governor.sqlite_store import SqliteStore
from governor.store import InMemoryStore

# 2025-10-09 08:53:20 UTC: mid-day, mid-month
NOW = 1_760_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_org(guardrails=None, **kwargs) -> Organization:
    defaults = dict(id="org_1", name="Acme")
    defaults.update(kwargs)
    return Organization(guardrails=guardrails or OrgGuardrails(), **defaults)


def make_agent(**kwargs) -> Agent:
    defaults = dict(id="agent_1", organization_id="org_1", name="Procurement Bot")
    defaults.update(kwargs)
    return Agent(**defaults)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """Factory for an in-memory store seeded with one org and any agents given."""

    def _make(*agents, org=None):
        store = InMemoryStore(clock=clock)
        store.add_organization(org or make_org())
        for agent in agents or (make_agent(),):
            store.add_agent(agent)
        return store

    return _make


@pytest.fixture
def payments():
    return MockPaymentProvider(card_ttl_seconds=600)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path, clock):
    """Both storage backends, unseeded."""
    if request.param == "memory":
        return InMemoryStore(clock=clock)
    return SqliteStore(tmp_path / "governor.sqlite3", clock=clock)


async def seed(store, *records) -> None:
    """Insert agents/orgs into either backend."""
    for record in records:
        if isinstance(store, InMemoryStore):
            if isinstance(record, Agent):
                store.add_agent(record)
            else:
                store.add_organization(record)
        elif isinstance(record, Agent):
            await store.save_agent(record)
        else:
            await store.save_organization(record)
