"""Shared fixtures: a fresh SQLite database and blob store per test."""

import io
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT_CALLS", "100000")
os.environ.setdefault("SWEEP_ON_STARTUP", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from filevault import auth, crud, database, models, schemas
from filevault.config import get_settings
from filevault.main import app, get_blob_store
from filevault.storage import BlobStore

MB = 1024 * 1024


class CountingBlobStore(BlobStore):
    """Blob store that records every physical write and delete."""

    def __init__(self, root) -> None:
        super().__init__(root)
        self.writes = []
        self.deletes = []

    def put(self, content_hash, staged_path):
        self.writes.append(content_hash)
        return super().put(content_hash, staged_path)

    def delete(self, location):
        removed = super().delete(location)
        if removed:
            self.deletes.append(location)
        return removed


@pytest.fixture
def engine(tmp_path):
    engine = database.make_engine(f"sqlite:///{tmp_path / 'vault.db'}")
    database.init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return database.make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def blob_store(tmp_path):
    return CountingBlobStore(tmp_path / "blobs")


@pytest.fixture
def make_user(db):
    counter = iter(range(1, 1000))

    def _make_user(quota_bytes=10 * MB, email=None):
        n = next(counter)
        email = email or f"user{n}@example.com"
        user = schemas.UserCreate(username=f"user{n}", email=email, password="hunter2")
        return crud.create_user(db, user, quota_bytes=quota_bytes)

    return _make_user


@pytest.fixture
def ingest(db, blob_store):
    def _ingest(user_id, payload, filename="file.bin", session=None, max_bytes=20 * MB):
        return crud.upload_file(
            session or db,
            blob_store,
            user_id,
            filename,
            io.BytesIO(payload),
            max_bytes=max_bytes,
            default_quota=10 * MB,
        )

    return _ingest


def _read(session, statement):
    # Commit straight away so the test session never holds the SQLite lock
    row = session.scalar(statement.execution_options(populate_existing=True))
    session.commit()
    return row


def quota_of(session, user_id):
    return _read(session, select(models.Quota).where(models.Quota.user_id == user_id))


def blob_of(session, content_hash):
    return _read(session, select(models.FileBlob).where(models.FileBlob.content_hash == content_hash))


def count_rows(session, model):
    return _read(session, select(func.count()).select_from(model))


@pytest.fixture
def provider():
    return auth.IdentityProvider("test-secret")


@pytest.fixture
def client(session_factory, blob_store, provider):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[database.get_db] = _get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[auth.get_identity_provider] = lambda: provider
    get_settings.cache_clear()
    yield TestClient(app)
    app.dependency_overrides.clear()
