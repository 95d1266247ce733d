"""Pytest configuration and fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["PROGRESS_PUBSUB_ENABLED"] = "false"

import csv  # noqa: E402
import io  # noqa: E402
import uuid  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.api.dependencies import get_chunk_store, get_scheduler  # noqa: E402
from app.config import Settings  # noqa: E402
from app.database import Base, build_engine, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.services.chunk_store import ChunkStore  # noqa: E402
from app.services.upload_service import UploadJobManager  # noqa: E402


class FakeScheduler:
    """Records submitted and forgotten jobs instead of talking to Celery."""

    def __init__(self):
        self.submitted = []
        self.forgotten = []

    def submit(self, job_id):
        self.submitted.append(job_id)
        return f"task-{job_id}"

    def forget(self, job_id):
        self.forgotten.append(job_id)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database shared by every thread of a test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")

    @event.listens_for(engine, "connect")
    def set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA synchronous=OFF")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        upload_dir=str(tmp_path / "uploads"),
        progress_pubsub_enabled=False,
        min_chunk_size=4,
    )


@pytest.fixture
def chunk_store(settings):
    return ChunkStore(settings.upload_dir)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def workspace_id():
    return uuid.uuid4()


@pytest.fixture
def manager(db, chunk_store, scheduler, settings):
    return UploadJobManager(db, chunk_store, scheduler, settings)


@pytest.fixture
def make_csv():
    """Build CSV bytes from a header and rows."""

    def _make_csv(rows, header=("email", "name"), delimiter=",", encoding="utf-8"):
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
        if header:
            writer.writerow(header)
        writer.writerows(rows)
        return buffer.getvalue().encode(encoding)

    return _make_csv


@pytest.fixture
def upload_file(manager, workspace_id):
    """Create a job for ``content`` and upload every chunk of it."""

    def _upload_file(content, chunk_size=None, processing_config=None, validation_rules=None):
        created = manager.create_job(
            workspace_id=workspace_id,
            user_id=uuid.uuid4(),
            filename="leads.csv",
            file_size=len(content),
            file_type="text/csv",
            chunk_size=chunk_size,
            processing_config=processing_config,
            validation_rules=validation_rules,
        )
        job = created.job
        for index in range(job.total_chunks):
            start = index * job.chunk_size
            manager.record_chunk_uploaded(job.id, index, content[start:start + job.chunk_size])
        return job

    return _upload_file


@pytest.fixture
def client(session_factory, chunk_store, scheduler):
    """TestClient wired to the test database, chunk store and scheduler."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chunk_store] = lambda: chunk_store
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    yield TestClient(app)

    app.dependency_overrides.clear()
