from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Union
from urllib.parse import quote

import httpx

from filedesk.config import BlobStoreSettings
from filedesk.core.exceptions import (
    BlobDeleteFailed,
    CredentialRejected,
    PayloadTooLarge,
    StorageTimeout,
    StorageUnavailable,
    UpstreamUploadFailed,
)

logger = logging.getLogger("filedesk.blob_store")

Payload = Union[bytes, BinaryIO]

_UPLOAD_PATH = "/api/upload"
_DELETE_PATH = "/api/files/{key}"


@dataclass(frozen=True)
class StoredBlob:
    """What the blob store says it stored. Authoritative over caller-declared values."""

    path: str
    size_bytes: int
    content_type: Optional[str]


class BlobStoreClient:
    """A thin wrapper around the remote blob store's upload/delete endpoints."""

    def __init__(self, settings: BlobStoreSettings, transport: httpx.BaseTransport | None = None):
        self._settings = settings
        self._client = httpx.Client(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.timeout, connect=settings.connect_timeout),
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self._settings.api_key}

    def upload(self, file_name: str, payload: Payload, content_type: str | None) -> StoredBlob:
        """Send one multipart transfer and return the store's file descriptor."""
        files = {"files": (file_name, payload, content_type or "application/octet-stream")}
        try:
            response = self._client.post(_UPLOAD_PATH, files=files, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise StorageTimeout(f"Blob store timed out while uploading '{file_name}'") from exc
        except httpx.ConnectError as exc:
            raise StorageUnavailable("Unable to connect to upload server") from exc
        except httpx.TransportError as exc:
            raise UpstreamUploadFailed(f"Upload of '{file_name}' was interrupted: {exc}") from exc

        if response.status_code == 401:
            raise CredentialRejected("Authentication failed - please check the blob store credentials")
        if response.status_code == 413:
            raise PayloadTooLarge("File is too large for the blob store")
        if not response.is_success:
            raise UpstreamUploadFailed(f"Blob store answered HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamUploadFailed("Invalid response from upload server") from exc
        return self._parse_descriptor(body)

    @staticmethod
    def _parse_descriptor(body: Any) -> StoredBlob:
        """
        The store answers ``{"files": [{...}]}``; the first entry describes our upload.
        Path may be named ``path`` or ``key``; the MIME type has several spellings.
        """
        files = body.get("files") if isinstance(body, dict) else None
        entry = files[0] if isinstance(files, list) and files else None
        if not isinstance(entry, dict):
            raise UpstreamUploadFailed("Invalid response from upload server")

        path = entry.get("path") or entry.get("key")
        size = entry.get("size")
        if not isinstance(path, str) or not path:
            raise UpstreamUploadFailed("Upload response is missing the storage path")
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise UpstreamUploadFailed("Upload response is missing a valid size")

        content_type = entry.get("mimeType") or entry.get("mimetype") or entry.get("type")
        if not isinstance(content_type, str) or not content_type:
            content_type = None
        return StoredBlob(path=path, size_bytes=size, content_type=content_type)

    def delete(self, storage_path: str) -> None:
        """Delete a blob by its storage path. A blob that is already gone counts as deleted."""
        url = _DELETE_PATH.format(key=quote(storage_path, safe=""))
        try:
            response = self._client.delete(url, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise StorageTimeout(f"Blob store timed out while deleting '{storage_path}'") from exc
        except httpx.TransportError as exc:
            raise StorageUnavailable(f"Unable to reach blob store: {exc}") from exc

        if response.status_code == 404:
            logger.info("event=blob_already_absent storage_path=%s", storage_path)
            return
        if response.status_code == 401:
            raise CredentialRejected("Blob store rejected the service credential on delete")
        if not response.is_success:
            raise BlobDeleteFailed(f"Blob store answered HTTP {response.status_code}")

    def close(self) -> None:
        self._client.close()
