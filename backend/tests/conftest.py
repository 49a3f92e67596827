import os
import tempfile

# settings are read at import time, point them somewhere harmless first
_scratch_root = tempfile.mkdtemp(prefix="streamvault-tests-")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("DATA_DIR", _scratch_root)
os.environ.setdefault("LOG_DIR", os.path.join(_scratch_root, "logs"))

import threading
from itertools import count
from uuid import uuid4

import pytest
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

import streamvault.models  # noqa: F401
from streamvault.core.errors import BlobNotFound
from streamvault.models import StorageAccount
from streamvault.services import queue as job_queue
from streamvault.services.account_registry import AccountRegistry
from streamvault.services.storage_pool import StoragePool


class FakeDriveClient:
    """in-memory stand-in for DriveAccountClient"""

    def __init__(self, account_id, email, quota_usage=None):
        self.account_id = account_id
        self.email = email
        self.files = {}
        self.public = set()
        self.calls = {"upload": 0, "download": 0, "delete": 0, "make_public": 0, "get_metadata": 0}
        # exceptions raised (in order) by the next upload / download calls
        self.upload_errors = []
        self.download_errors = []
        self.share_errors = []
        self.quota_usage = quota_usage
        self._lock = threading.Lock()

    def upload(self, local_path, media_type, name):
        with self._lock:
            self.calls["upload"] += 1
            if self.upload_errors:
                raise self.upload_errors.pop(0)
        with open(local_path, "rb") as f:
            data = f.read()
        remote_id = uuid4().hex
        with self._lock:
            self.files[remote_id] = {"name": name, "mimeType": media_type, "data": data}
        return remote_id

    def make_public(self, remote_id):
        with self._lock:
            self.calls["make_public"] += 1
            if self.share_errors:
                raise self.share_errors.pop(0)
            self.public.add(remote_id)

    def download(self, remote_id, dest_path):
        with self._lock:
            self.calls["download"] += 1
            if self.download_errors:
                raise self.download_errors.pop(0)
            stored = self.files.get(remote_id)
        if stored is None:
            raise BlobNotFound(f"remote object not found: {remote_id}")
        with open(dest_path, "wb") as f:
            f.write(stored["data"])
        return dest_path

    def delete(self, remote_id):
        with self._lock:
            self.calls["delete"] += 1
            if self.files.pop(remote_id, None) is None:
                raise BlobNotFound(f"remote object not found: {remote_id}")

    def get_metadata(self, remote_id):
        with self._lock:
            self.calls["get_metadata"] += 1
            stored = self.files.get(remote_id)
        if stored is None:
            raise BlobNotFound(f"remote object not found: {remote_id}")
        return {"id": remote_id, "name": stored["name"], "mimeType": stored["mimeType"], "size": str(len(stored["data"]))}

    def get_quota(self):
        if self.quota_usage is not None:
            return self.quota_usage, None
        with self._lock:
            return sum(len(f["data"]) for f in self.files.values()), None


def fake_client_factory(account):
    if (account.credentials or {}).get("broken"):
        raise ValueError(f"unusable key for {account.email}")
    return FakeDriveClient(account.id, account.email)


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="registry")
def registry_fixture():
    registry = AccountRegistry(client_factory=fake_client_factory)
    registry.loaded = True
    return registry


@pytest.fixture(name="sleeps")
def sleeps_fixture():
    return []


@pytest.fixture(name="pool")
def pool_fixture(registry, sleeps):
    return StoragePool(registry, max_retries=4, sleep=sleeps.append)


_account_numbers = count(1)


@pytest.fixture(name="make_account")
def make_account_fixture(session, registry):
    def make_account(capacity=1_000_000, used=0, active=True, register=True, name=None, credentials=None):
        number = next(_account_numbers)
        account = StorageAccount(
            name=name or f"account-{number}",
            email=f"svc-{number}@pool-test.iam.gserviceaccount.com",
            credentials=credentials or {"type": "service_account"},
            capacity_bytes=capacity,
            used_bytes=used,
            is_active=active,
        )
        session.add(account)
        session.commit()
        session.refresh(account)
        if register:
            registry.register(account.id, FakeDriveClient(account.id, account.email))
        return account
    return make_account


@pytest.fixture(name="enqueued", autouse=True)
def enqueued_fixture(monkeypatch):
    """capture rq enqueues instead of talking to redis"""
    calls = {"conversions": [], "previews": []}
    counter = count(1)

    def enqueue_conversion(job_id):
        calls["conversions"].append(job_id)
        return f"rq-conversion-{next(counter)}"

    def enqueue_preview(asset_id):
        calls["previews"].append(asset_id)
        return f"rq-preview-{next(counter)}"

    monkeypatch.setattr(job_queue, "enqueue_conversion", enqueue_conversion)
    monkeypatch.setattr(job_queue, "enqueue_preview", enqueue_preview)
    return calls


@pytest.fixture(name="stored_video")
def stored_video_fixture(session, pool, make_account, tmp_path):
    """a ready video asset whose bytes live on a fake account"""
    from streamvault.models import Asset, AssetStatus

    make_account(capacity=1_000_000_000)
    source = tmp_path / "source.mp4"
    source.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 512)
    blob = pool.put(session, str(source), "video/mp4", "source.mp4")

    asset = Asset(
        identifier=str(uuid4()),
        name="holiday.mp4",
        category="video",
        size_bytes=source.stat().st_size,
        media_type="video/mp4",
        status=AssetStatus.READY,
        account_id=blob.account_id,
        remote_id=blob.remote_id,
    )
    session.add(asset)
    session.commit()
    session.refresh(asset)
    return asset
