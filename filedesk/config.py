from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from filedesk.core.exceptions import ConfigurationError

load_dotenv()

DB_URL = os.getenv("DB_URL", "sqlite:///./filedesk.db")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "10"))
DB_CONNECT_ARGS = (
    {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS} if DB_URL.startswith("sqlite") else {}
)

# Remote blob store
BLOB_STORE_URL = os.getenv("BLOB_STORE_URL", "")
BLOB_STORE_API_KEY = os.getenv("BLOB_STORE_API_KEY", "")
BLOB_STORE_CONNECT_TIMEOUT = float(os.getenv("BLOB_STORE_CONNECT_TIMEOUT", "5"))
BLOB_STORE_TIMEOUT = float(os.getenv("BLOB_STORE_TIMEOUT", "120"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(1024 * 1024 * 1024)))
UPLOAD_CONCURRENCY = max(1, int(os.getenv("UPLOAD_CONCURRENCY", "4")))

# Identity. The session header is trusted as-is unless SESSION_PROXY_SECRET is set,
# in which case the proxy must also send it in SESSION_PROXY_SECRET_HEADER.
SESSION_USER_HEADER = os.getenv("SESSION_USER_HEADER", "x-session-user").lower()
SESSION_PROXY_SECRET = os.getenv("SESSION_PROXY_SECRET", "")
SESSION_PROXY_SECRET_HEADER = os.getenv("SESSION_PROXY_SECRET_HEADER", "x-proxy-secret").lower()
BOOTSTRAP_ADMIN_ID = os.getenv("BOOTSTRAP_ADMIN_ID", "")

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
REDIS_URL = os.getenv("REDIS_URL", "")

# Orphaned blob reconciliation
ENABLE_RECONCILER = os.getenv("ENABLE_RECONCILER", "true").lower() in {"true", "1", "yes"}
RECONCILE_INTERVAL_MINUTES = max(1, int(os.getenv("RECONCILE_INTERVAL_MINUTES", "30")))


@dataclass(frozen=True)
class BlobStoreSettings:
    """Process-wide blob store configuration, read once at startup."""

    base_url: str
    api_key: str
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    connect_timeout: float = BLOB_STORE_CONNECT_TIMEOUT
    timeout: float = BLOB_STORE_TIMEOUT

    @property
    def is_complete(self) -> bool:
        return bool(self.base_url and self.api_key)

    def require_complete(self) -> None:
        missing = [
            name
            for name, value in (("BLOB_STORE_URL", self.base_url), ("BLOB_STORE_API_KEY", self.api_key))
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing blob store configuration: {', '.join(missing)}")


def load_blob_store_settings() -> BlobStoreSettings:
    settings = BlobStoreSettings(
        base_url=BLOB_STORE_URL.strip().rstrip("/"),
        api_key=BLOB_STORE_API_KEY.strip(),
    )
    settings.require_complete()
    return settings
