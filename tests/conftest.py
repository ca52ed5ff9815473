"""
tests/conftest.py -- Shared test fixtures for LabAccess.

This module provides:
  - store / service / flow: isolated in-memory identity store plus the
    services built on it, one per test
  - make_user: factory that inserts a user of any role, bypassing the gates
  - people: one user per role, ready to act as actor or target
  - FakeNotifier: records recovery messages instead of sending mail
  - make_api_harness(): TestClient wired to a pre-populated shared-memory store

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API harness because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

The environment must be set before any auth/core/api import: get_settings()
is read once, the rate-limit decorators are evaluated at import time, and
TrustedHostMiddleware must accept the TestClient's "testserver" host.
"""

from __future__ import annotations

import os

# CRITICAL: set before any project import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("RECOVERY_RATE_LIMIT", "1000/minute")

from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.errors import NotificationFailed
from auth.models import ADMINISTRADOR, CLIENTE, LABORATORISTA, SUPER_ADMIN, NewUser, User
from auth.recovery import RecoveryFlow
from auth.service import AccessService
from auth.store import IdentityStore
from auth.tokens import build_session, encode_session, hash_password

PASSWORD = "Passw0rd!"
# bcrypt is deliberately slow; hash the shared fixture password once.
PASSWORD_HASH = hash_password(PASSWORD)

_DEFAULT_DETAILS = {CLIENTE: {"razonSocial": "Laboratorios Acme S.A."}}


def insert_user(store: IdentityStore, role_name: str, email: str, details: dict | None = None, **fields) -> User:
    return store.create(
        NewUser(
            email=email,
            name=fields.pop("name", f"{role_name.title()} User"),
            document=fields.pop("document", "100200300"),
            role_name=role_name,
            hashed_password=PASSWORD_HASH,
            details=details if details is not None else _DEFAULT_DETAILS.get(role_name, {}),
            **fields,
        )
    )


class FakeClock:
    """Controllable epoch-seconds clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNotifier:
    """Stands in for RecoveryMailer. Set fail=True to simulate an SMTP outage."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send(self, address: str, token: str, display_name: str) -> str:
        if self.fail:
            raise NotificationFailed()
        self.sent.append((address, token, display_name))
        return "sent"


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = IdentityStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: IdentityStore) -> AccessService:
    return AccessService(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flow(store: IdentityStore, clock: FakeClock) -> RecoveryFlow:
    return RecoveryFlow(store, expire_seconds=3600, max_attempts=3, clock=clock)


@pytest.fixture
def make_user(store: IdentityStore) -> Callable[..., User]:
    """Return a factory: make_user(role_name, email, details=None, **fields) -> User."""

    def factory(role_name: str, email: str, details: dict | None = None, **fields) -> User:
        return insert_user(store, role_name, email, details, **fields)

    return factory


@pytest.fixture
def people(make_user) -> dict[str, User]:
    """One active user per role, keyed by role name."""
    return {
        SUPER_ADMIN: make_user(SUPER_ADMIN, "root@lab.com", {"codigoSeguridad": "s3cr3t"}),
        ADMINISTRADOR: make_user(ADMINISTRADOR, "admin@lab.com"),
        LABORATORISTA: make_user(LABORATORISTA, "tech@lab.com", {"especialidad": "microbiologia"}),
        CLIENTE: make_user(CLIENTE, "client@acme.com"),
    }


# ---------------------------------------------------------------------------
# API harness
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: IdentityStore
    notifier: FakeNotifier
    users: dict[str, User] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)

    def auth(self, role_name: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[role_name]}"}


def _patch_lifespan(store: IdentityStore, notifier: FakeNotifier):
    """Return a lifespan that wires the test store and fake notifier into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store)
        app.state.notifier = notifier
        yield

    return test_lifespan


def make_api_harness(db_suffix: str, populate: bool = True):
    """Yield an ApiHarness over a fresh named shared-memory store.

    With populate=True the store holds one user per role and harness.tokens
    has a session token for each of them.
    """
    store = IdentityStore(f"sqlite:///file:test_labaccess_{db_suffix}?mode=memory&cache=shared&uri=true")
    notifier = FakeNotifier()
    harness_users: dict[str, User] = {}
    tokens: dict[str, str] = {}
    if populate:
        harness_users = {
            SUPER_ADMIN: insert_user(store, SUPER_ADMIN, "root@lab.com"),
            ADMINISTRADOR: insert_user(store, ADMINISTRADOR, "admin@lab.com"),
            LABORATORISTA: insert_user(store, LABORATORISTA, "tech@lab.com"),
            CLIENTE: insert_user(store, CLIENTE, "client@acme.com"),
        }
        tokens = {role: encode_session(build_session(user)) for role, user in harness_users.items()}

    app.router.lifespan_context = _patch_lifespan(store, notifier)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, notifier=notifier, users=harness_users, tokens=tokens)
    store.close()


@pytest.fixture(scope="module")
def api(request):
    """Module-scoped harness with one user per role, on a database private to the module."""
    yield from make_api_harness(request.module.__name__.rsplit(".", 1)[-1])
