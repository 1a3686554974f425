from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="calls-tests-"))

# Must be set before importing modules that create the SQLAlchemy engine.
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{(RUNTIME_DIR / 'calls_test.db').as_posix()}"
os.environ["DATA_DIR"] = str(RUNTIME_DIR)
# Ensure tests can rely on the schema existing without running Alembic.
os.environ["AUTO_CREATE_DB_SCHEMA"] = "true"
os.environ["MEDIA_BACKEND"] = "none"

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from db.base import Base  # noqa: E402
from db.repository import CallRepository  # noqa: E402
from media.backends import LocalMedia, SessionDescription  # noqa: E402


def _engine_for(url: str):
    # NullPool: every test drives its own event loop via asyncio.run.
    return create_async_engine(url, poolclass=NullPool)


def _repository_on(engine) -> CallRepository:
    return CallRepository(async_sessionmaker(engine, expire_on_commit=False, autoflush=False))


@pytest.fixture()
def repository_factory(tmp_path: Path):
    """Async factory for repositories sharing one fresh database per test.

    Each call returns a repository with its own change feed, like a second
    client connected to the same store. The feeds only see each other's
    writes once they are attached to a shared topic transport.
    """

    url = f"sqlite+aiosqlite:///{(tmp_path / 'calls.db').as_posix()}"

    async def _create() -> CallRepository:
        engine = _engine_for(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return _repository_on(engine)

    return _create


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeConnection:
    """Peer connection that 'connects' once both descriptions are applied."""

    def __init__(self, *, fail_remote_description: bool = False) -> None:
        self.local: SessionDescription | None = None
        self.remote: SessionDescription | None = None
        self.tracks: list[FakeTrack] = []
        self.added_candidates: list[str] = []
        self.closed = False
        self._state = "new"
        self._fail_remote_description = fail_remote_description
        self._state_callbacks = []
        self._track_callbacks = []
        self._candidate_callbacks = []

    @property
    def connection_state(self) -> str:
        return self._state

    def on_state_change(self, callback) -> None:
        self._state_callbacks.append(callback)

    def on_track(self, callback) -> None:
        self._track_callbacks.append(callback)

    def on_ice_candidate(self, callback) -> None:
        self._candidate_callbacks.append(callback)

    def add_track(self, track: FakeTrack) -> None:
        self.tracks.append(track)

    async def create_offer(self) -> SessionDescription:
        self.local = SessionDescription("offer", f"v=0 offer {id(self)}")
        self._maybe_connect()
        return self.local

    async def create_answer(self) -> SessionDescription:
        if self.remote is None:
            raise RuntimeError("cannot answer without a remote offer")
        self.local = SessionDescription("answer", f"v=0 answer {id(self)}")
        self._maybe_connect()
        return self.local

    async def set_remote_description(self, description: SessionDescription) -> None:
        if self._fail_remote_description:
            raise ValueError("malformed SDP")
        self.remote = description
        self._maybe_connect()

    async def add_ice_candidate(self, candidate) -> None:
        if self.remote is None:
            raise RuntimeError("remote description not set")
        self.added_candidates.append(candidate.candidate)

    async def close(self) -> None:
        self.closed = True

    def emit_state(self, state: str) -> None:
        self._state = state
        for callback in list(self._state_callbacks):
            callback(state)

    def emit_candidate(self, candidate) -> None:
        for callback in list(self._candidate_callbacks):
            callback(candidate)

    def fail(self) -> None:
        self.emit_state("failed")

    def _maybe_connect(self) -> None:
        if self.local is None or self.remote is None or self._state != "new":
            return
        self.emit_state("connecting")
        self.emit_state("connected")
        remote = FakeTrack("audio")
        for callback in list(self._track_callbacks):
            callback(remote)


class FakeMediaBackend:
    def __init__(
        self,
        *,
        error: Exception | None = None,
        fail_remote_description: bool = False,
        capture_delay: float = 0.0,
    ) -> None:
        self.error = error
        self.capture_delay = capture_delay
        self.fail_remote_description = fail_remote_description
        self.captures: list[LocalMedia] = []
        self.connections: list[FakeConnection] = []

    async def capture(self, *, audio: bool, video: bool) -> LocalMedia:
        if self.capture_delay:
            await asyncio.sleep(self.capture_delay)
        if self.error is not None:
            raise self.error
        media = LocalMedia(
            audio_tracks=[FakeTrack("audio")] if audio else [],
            video_tracks=[FakeTrack("video")] if video else [],
        )
        self.captures.append(media)
        return media

    def create_connection(self, ice_servers: list[str]) -> FakeConnection:
        connection = FakeConnection(fail_remote_description=self.fail_remote_description)
        self.connections.append(connection)
        return connection


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_backend():
    # Media stand-in so tests never open real devices or aiortc.
    return FakeMediaBackend


@pytest.fixture(scope="session")
def app():
    import importlib

    main = importlib.import_module("main")
    return main.app


@pytest.fixture(scope="session")
def api_repository() -> CallRepository:
    return _repository_on(_engine_for(os.environ["DATABASE_URL"]))


@pytest.fixture()
def client(app, api_repository):
    import api.dependencies as deps

    app.dependency_overrides[deps.get_repository] = lambda: api_repository

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
