"""
tests/conftest.py -- Shared test fixtures for Helfy integration tests.

This module provides:
  - _make_test_store(): creates an isolated in-memory credential store
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - api_client: TestClient plus a pre-registered user and a live token
  - activity_log / cdc_log: capture the JSON-line log streams

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

BCRYPT_ROUNDS is lowered before any app import so hashing stays fast; the
cost factor does not change the code path.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import timedelta

# Set before any app import so get_settings() sees them on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.activity import ACTIVITY_LOGGER_NAME, ActivityLog
from auth.store import CredentialStore
from auth.tokens import TokenService
from cdc.processor import CDC_LOGGER_NAME
from core.config import get_settings

TEST_ROUNDS = 4


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    store = CredentialStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")
    store.create_schema()
    return store


def _patch_lifespan(store: CredentialStore, tokens: TokenService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so routes see an
    isolated DB. The purge_task is a long-sleeping coroutine so shutdown
    has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.store = store
        app.state.tokens = tokens
        app.state.activity = ActivityLog()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.purge_task

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    store: CredentialStore
    tokens: TokenService
    user_id: int
    token: str

    def auth(self, token: str | None = None) -> dict:
        return {"X-Auth-Token": token or self.token}


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan, so
    tests hit real route handlers against an isolated in-memory store.
    A user (tester@example.com / tester / testpass123) is created up front
    and a token is issued for it.
    """
    store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    tokens = TokenService(store, lifetime=timedelta(hours=24), rounds=TEST_ROUNDS)

    uid = store.create_user("tester@example.com", "tester", tokens.hash_password("testpass123"))
    token = tokens.issue_token(uid).token

    app.router.lifespan_context = _patch_lifespan(store, tokens)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, tokens=tokens, user_id=uid, token=token)

    store.close()


@pytest.fixture
def memory_store() -> Generator[CredentialStore, None, None]:
    """Single-threaded in-memory store for unit tests."""
    store = CredentialStore("sqlite:///:memory:")
    store.create_schema()
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Log capture
#
# The activity and CDC loggers stop propagation once their stream handler is
# configured, so caplog (which listens on the root logger) cannot be relied on.
# These fixtures attach a collecting handler to the logger itself.
# ---------------------------------------------------------------------------


class _JsonLineHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.INFO)
        self.lines: list[dict] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(json.loads(record.getMessage()))


def _capture(name: str) -> Generator[list[dict], None, None]:
    target = logging.getLogger(name)
    handler = _JsonLineHandler()
    previous_level = target.level
    target.addHandler(handler)
    target.setLevel(logging.INFO)
    yield handler.lines
    target.removeHandler(handler)
    target.setLevel(previous_level)


@pytest.fixture
def activity_log() -> Generator[list[dict], None, None]:
    yield from _capture(ACTIVITY_LOGGER_NAME)


@pytest.fixture
def cdc_log() -> Generator[list[dict], None, None]:
    yield from _capture(CDC_LOGGER_NAME)
