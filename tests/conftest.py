import importlib
import mimetypes
import re
import sys
import threading
import uuid
from urllib.parse import unquote
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine

project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from filedesk.config import BlobStoreSettings  # noqa: E402
from filedesk.core.metrics import MetricsStore  # noqa: E402
from filedesk.services.blob_store import BlobStoreClient  # noqa: E402
from filedesk.storage import FileOrchestrator  # noqa: E402

BLOB_URL = "http://blobs.test"
SERVICE_KEY = "service-key"
ADMIN_ID = "admin-1"


class FakeBlobStore:
    """In-memory stand-in for the remote blob store, served through httpx.MockTransport."""

    def __init__(self):
        self._lock = threading.Lock()
        self.blobs = {}
        self.calls = []
        self.upload_status = 200
        self.upload_body = None
        self.upload_error = None
        self.size_override = None
        self.fail_delete = False
        self.delete_error = None
        self.fail_upload_names = set()

    @property
    def upload_calls(self):
        return [c for c in self.calls if c[0] == "POST"]

    @property
    def delete_calls(self):
        return [c for c in self.calls if c[0] == "DELETE"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.calls.append((request.method, request.url.path, request.headers.get("x-api-key")))
        if request.headers.get("x-api-key") != SERVICE_KEY:
            return httpx.Response(401, json={"error": "bad key"})
        if request.method == "POST" and request.url.path == "/api/upload":
            return self._upload(request)
        if request.method == "DELETE" and request.url.path.startswith("/api/files/"):
            return self._delete(request)
        return httpx.Response(404, json={"error": "no route"})

    def _upload(self, request):
        if self.upload_error is not None:
            raise self.upload_error
        if self.upload_status != 200:
            return httpx.Response(self.upload_status, json={"error": "rejected"})
        if self.upload_body is not None:
            return httpx.Response(200, json=self.upload_body)

        file_name, content_type, content = _parse_multipart(request)
        if file_name in self.fail_upload_names:
            return httpx.Response(500, json={"error": "disk full"})
        path = f"uploads/{uuid.uuid4().hex}/{file_name}"
        resolved = mimetypes.guess_type(file_name)[0] or content_type
        with self._lock:
            self.blobs[path] = content
        size = self.size_override if self.size_override is not None else len(content)
        return httpx.Response(
            200,
            json={"message": "uploaded", "files": [{"path": path, "size": size, "mimeType": resolved}]},
        )

    def _delete(self, request):
        if self.delete_error is not None:
            raise self.delete_error
        if self.fail_delete:
            return httpx.Response(500, json={"error": "storage node down"})
        path = unquote(request.url.raw_path.decode().split("/api/files/", 1)[1])
        with self._lock:
            existed = self.blobs.pop(path, None) is not None
        return httpx.Response(200 if existed else 404, json={"deleted": existed})


def _parse_multipart(request: httpx.Request):
    boundary = request.headers["content-type"].split("boundary=", 1)[1].encode()
    body = request.read()
    part = body.split(b"--" + boundary)[1]
    head, _, content = part.partition(b"\r\n\r\n")
    file_name = re.search(rb'filename="([^"]*)"', head).group(1).decode()
    content_type = re.search(rb"Content-Type: ([^\r\n]+)", head).group(1).decode()
    return file_name, content_type, content[:-2]


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def engine(tmp_path):
    import filedesk.models  # noqa: F401  registers the tables

    engine = create_engine(f"sqlite:///{tmp_path / 'meta.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def make_orchestrator(engine, blob_store):
    def _make(*, max_upload_bytes=10 * 1024 * 1024, base_url=BLOB_URL, api_key=SERVICE_KEY, on_listing_changed=None):
        settings = BlobStoreSettings(base_url=base_url, api_key=api_key, max_upload_bytes=max_upload_bytes)
        client = BlobStoreClient(settings, transport=httpx.MockTransport(blob_store.handler))
        return FileOrchestrator(
            settings,
            client,
            session_factory=lambda: Session(engine, expire_on_commit=False),
            metrics=MetricsStore(),
            on_listing_changed=on_listing_changed,
            max_workers=4,
        )

    return _make


def _prepare_client(
    tmp_path, monkeypatch, fake, *, max_size=str(10 * 1024 * 1024), rate_limit="100", proxy_secret=""
):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("BLOB_STORE_URL", BLOB_URL)
    monkeypatch.setenv("BLOB_STORE_API_KEY", SERVICE_KEY)
    monkeypatch.setenv("MAX_UPLOAD_BYTES", max_size)
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", rate_limit)
    monkeypatch.setenv("ENABLE_RECONCILER", "false")
    monkeypatch.setenv("BOOTSTRAP_ADMIN_ID", ADMIN_ID)
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("SESSION_PROXY_SECRET", proxy_secret)

    # Reload modules so configuration changes take effect cleanly.
    module_order = [
        "filedesk.config",
        "filedesk.core.metrics",
        "filedesk.core.rate_limit",
        "filedesk.db",
        "filedesk.services.blob_store",
        "filedesk.services.keys",
        "filedesk.services.users",
        "filedesk.services.stats",
        "filedesk.storage",
        "filedesk.auth",
        "filedesk.reconciler",
        "filedesk.api.routes",
        "filedesk.main",
    ]
    for module_name in module_order:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["filedesk.main"]
    storage = sys.modules["filedesk.storage"]
    blob_module = sys.modules["filedesk.services.blob_store"]
    main.app.state.orchestrator = storage.FileOrchestrator(
        main.settings,
        blob_module.BlobStoreClient(main.settings, transport=httpx.MockTransport(fake.handler)),
    )
    return TestClient(main.app)


@pytest.fixture
def prepare_client(tmp_path, monkeypatch, blob_store):
    def _prepare(**kwargs):
        return _prepare_client(tmp_path, monkeypatch, blob_store, **kwargs)

    return _prepare


@pytest.fixture
def client(prepare_client):
    with prepare_client() as c:
        yield c
