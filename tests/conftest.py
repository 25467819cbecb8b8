"""
Shared fixtures.

Every test gets its own in-process ledger and read model. The ledger clock
ticks one second per event unless a test pins it with FixedClock.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from certregistry.config import AuthConfig, IndexerConfig, LedgerConfig, SchedulerConfig
from certregistry.container import build_container
from certregistry.core.ledger_client import InMemoryLedger
from certregistry.core.signature import generate_account, sign_message
from certregistry.db.store import InMemoryReadModelStore
from certregistry.schemas import CertificateAttributes


class StepClock:
    """Returns start, start+step, start+2*step, ... on successive calls."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self._start = start or datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)
        self._step = step
        self._ticks = itertools.count()

    def __call__(self) -> datetime:
        return self._start + self._step * next(self._ticks)


class FixedClock:
    """Every call returns the same instant, like transactions mined in one block."""

    def __init__(self, instant=None):
        self.instant = instant or datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.instant


class Wallet:
    def __init__(self):
        self.address, self.key = generate_account()


def make_attributes(name="Ada Lovelace", value=385, program="BSc Mathematics"):
    return CertificateAttributes(
        subject_name=name,
        program=program,
        credential_value=value,
        issuing_authority="Example University",
    )


@pytest.fixture
def admin():
    return Wallet()


@pytest.fixture
def issuer():
    return Wallet()


@pytest.fixture
def outsider():
    """A wallet that is never registered."""
    return Wallet()


@pytest.fixture
def ledger(admin):
    return InMemoryLedger(genesis_admin=admin.address, clock=StepClock())


@pytest.fixture
def store():
    return InMemoryReadModelStore()


def make_container(store, ledger, **overrides):
    container = build_container(
        store=store,
        ledger=ledger,
        auth_config=overrides.pop("auth_config", AuthConfig(session_secret="test-secret")),
        ledger_config=overrides.pop("ledger_config", LedgerConfig(submit_timeout_seconds=5)),
        indexer_config=overrides.pop("indexer_config", IndexerConfig(enabled=False)),
        scheduler_config=overrides.pop("scheduler_config", SchedulerConfig(enabled=False)),
        **overrides,
    )
    container.indexer.run_once()
    return container


@pytest.fixture
def container(store, ledger):
    c = make_container(store, ledger)
    yield c
    c.stop()


@pytest.fixture
def registered_issuer(container, admin, issuer):
    """The issuer wallet, registered as a non-admin account."""
    container.accounts.register(admin.address, issuer.address, "Registrar", "registrar@example.edu")
    return issuer


def login(client, wallet) -> dict:
    """Challenge, sign and log in through the HTTP API; returns auth headers."""
    challenge = client.post("/auth/challenge", json={"address": wallet.address})
    assert challenge.status_code == 200
    message = challenge.json()["message"]
    response = client.post("/auth/login", json={
        "address": wallet.address,
        "message": message,
        "signature": sign_message(message, wallet.key),
    })
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
