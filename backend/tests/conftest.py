import hashlib
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from jose import jwt

backend_dir = Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.db.base import Base
from app.db.session import make_session_factory
from app.main import create_app
from app.services.hasher import ObjectDigest, ObjectMissing
from app.services.identity import IdentityResolver, JwtIdentityProvider

# Import models so that they are registered in Base.metadata before create_all.
import app.models  # noqa: F401

TEST_JWT_SECRET = "test-secret"
START = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


class _MemoryRedis:
    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def ping(self):
        return True

    def _now(self) -> float:
        return time.time()

    def _get_entry(self, key: str):
        v = self._data.get(key)
        if not v:
            return None
        value, exp = v
        if exp is not None and exp <= self._now():
            self._data.pop(key, None)
            return None
        return value, exp

    def get(self, key: str):
        entry = self._get_entry(key)
        return entry[0] if entry else None

    def incr(self, key: str):
        cur = self.get(key)
        n = int(cur or 0) + 1
        _, exp = self._data.get(key, ("", None))
        self._data[key] = (str(n), exp)
        return n

    def expire(self, key: str, seconds: int):
        entry = self._get_entry(key)
        if not entry:
            return False
        value, _ = entry
        self._data[key] = (value, self._now() + int(seconds))
        return True

    def ttl(self, key: str):
        entry = self._get_entry(key)
        if not entry:
            return -2
        _, exp = entry
        if exp is None:
            return -1
        return max(0, int(exp - self._now()))


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeStorage:
    """In-memory object store with deterministic fake signed URLs."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_signing = False
        self.deleted: list[str] = []

    def put(self, path: str, data: bytes) -> None:
        self.objects[path] = data

    def sign_upload_url(self, path, ttl_seconds, *, content_type=None):
        if self.fail_signing:
            from app.core.errors import CollaboratorError

            raise CollaboratorError("failed to sign upload url", storage_path=path)
        return f"https://storage.test/upload/{path}?ttl={int(ttl_seconds)}"

    def sign_download_url(self, path, ttl_seconds):
        return f"https://storage.test/download/{path}?ttl={int(ttl_seconds)}"

    def hash_object(self, path):
        if path not in self.objects:
            raise ObjectMissing(path)
        data = self.objects[path]
        return ObjectDigest(sha256=hashlib.sha256(data).hexdigest(), size=len(data))

    def delete_object(self, path):
        self.deleted.append(path)
        self.objects.pop(path, None)

    def ping(self):
        return None


class CountingHasher:
    def __init__(self, storage: FakeStorage):
        self.storage = storage
        self.calls: list[str] = []
        self.error: Exception | None = None

    def hash(self, path):
        self.calls.append(path)
        if self.error is not None:
            raise self.error
        return self.storage.hash_object(path)


def make_settings(**overrides) -> Settings:
    base = {
        "JWT_SECRET_KEY": TEST_JWT_SECRET,
        "IDENTITY_PROVIDER": "jwt",
        "CORS_ALLOW_ORIGINS": "http://localhost:3000",
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)


def make_token(subject: str, *, secret: str = TEST_JWT_SECRET, expires_in: int = 3600, **claims) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": subject, "iat": now, "exp": now + timedelta(seconds=expires_in)}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth(subject: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(subject)}"}


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def ctx(session_factory):
    settings = make_settings()
    storage = FakeStorage()
    hasher = CountingHasher(storage)
    clock = FakeClock(START)
    app = create_app(
        settings,
        session_factory=session_factory,
        storage=storage,
        hasher=hasher,
        identity=IdentityResolver(JwtIdentityProvider(TEST_JWT_SECRET)),
        redis_client=_MemoryRedis(),
        clock=clock,
    )
    client = TestClient(app)
    return SimpleNamespace(
        app=app,
        client=client,
        settings=settings,
        storage=storage,
        hasher=hasher,
        clock=clock,
        session_factory=session_factory,
    )


@pytest.fixture()
def create_slot(ctx):
    def _create(subject: str = "alice", *, filename: str = "My Report.pdf", mime_type: str = "application/pdf", size: int = 1024):
        r = ctx.client.post(
            "/assets/upload-slot",
            json={"filename": filename, "mime_type": mime_type, "size": size},
            headers=auth(subject),
        )
        assert r.status_code == 200, r.text
        return r.json()

    return _create


@pytest.fixture()
def ready_asset(ctx, create_slot):
    """Upload and finalize an asset owned by alice; returns its JSON."""

    def _make(subject: str = "alice", data: bytes = b"x" * 1024, filename: str = "My Report.pdf"):
        slot = create_slot(subject, filename=filename, size=len(data))
        ctx.storage.put(slot["storage_path"], data)
        r = ctx.client.post(
            f"/assets/{slot['asset_id']}/finalize",
            json={"client_sha256": sha256_hex(data), "expected_version": 0},
            headers=auth(subject),
        )
        assert r.status_code == 200, r.text
        return r.json()

    return _make


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
