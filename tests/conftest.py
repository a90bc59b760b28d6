from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class FakeConnection:
    """In-memory stand-in for a relay websocket."""

    def __init__(self, name: str = "conn") -> None:
        self.name = name
        self.sent: list[str] = []
        self.closed = False
        self.close_code: int | None = None

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def messages(self, type_: str | None = None) -> list[dict]:
        import json

        decoded = [json.loads(raw) for raw in self.sent]
        if type_ is None:
            return decoded
        return [message for message in decoded if message["type"] == type_]


class RecordingRepository:
    def __init__(self) -> None:
        self.outcomes: list = []
        self.stats: list = []

    async def record_outcome(self, outcome) -> None:
        self.outcomes.append(outcome)

    async def record_call_stats(self, stats, *, reported_by=None) -> None:
        self.stats.append((stats, reported_by))


class ManualClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture(scope="session")
def app(tmp_path_factory: pytest.TempPathFactory):
    tmp_dir = tmp_path_factory.mktemp("runtime")
    db_path = tmp_dir / "relay_test.db"

    # Must be set before importing modules that create the SQLAlchemy engine.
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{db_path.as_posix()}"
    os.environ["AUTO_CREATE_DB_SCHEMA"] = "true"
    os.environ["TURN_SECRET"] = "test-secret"

    import importlib

    # Ensure clean import with the test DB settings.
    for module_name in [
        "config.settings",
        "db.base",
        "db.models",
        "db.repository",
        "relay.server",
        "api.dependencies",
        "api.routes",
        "api.relay_routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    # Fresh relay per test so presence and call tables never leak between tests.
    import api.dependencies as deps
    from relay.server import RelayServer

    relay = RelayServer(deps.get_repository())
    app.dependency_overrides[deps.get_relay] = lambda: relay

    with TestClient(app) as test_client:
        test_client.relay = relay
        yield test_client

    app.dependency_overrides.clear()
