from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, select

from filedesk.config import UPLOAD_CONCURRENCY, BlobStoreSettings
from filedesk.core.exceptions import (
    FileDeskError,
    MetadataUnavailable,
    NotFound,
    PayloadTooLarge,
    Unauthorized,
    UpstreamUploadFailed,
    ValidationError,
)
from filedesk.core.metrics import MetricsStore, metrics as default_metrics
from filedesk.db import open_session
from filedesk.models import File, OrphanedBlob
from filedesk.services.blob_store import BlobStoreClient, Payload

logger = logging.getLogger("filedesk.storage")


def human_bytes(value: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(max(value, 0))
    for unit in units:
        if size < 1024 or unit == units[-1]:
            formatted = f"{size:.1f}".rstrip("0").rstrip(".")
            return f"{formatted or '0'} {unit}"
        size /= 1024
    return "0 B"


def payload_size(payload: Payload) -> int:
    """Size of the remaining payload, measured without consuming it."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return len(payload)
    start = payload.tell()
    payload.seek(0, os.SEEK_END)
    end = payload.tell()
    payload.seek(start)
    return end - start


@dataclass(frozen=True)
class UploadItem:
    file_name: str
    payload: Payload
    content_type: Optional[str] = None


@dataclass
class BatchItemResult:
    file_name: str
    record: Optional[File] = None
    error: Optional[FileDeskError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class DeleteOutcome:
    file_id: str
    blob_deleted: bool


class FileOrchestrator:
    """
    Keeps file records in the metadata store consistent with the remote blob store.

    The metadata store is authoritative. A record is written only after the blob
    store confirms an upload, and on delete the record goes first; a blob left
    behind by a failed remote delete is logged and recorded as an orphan instead
    of resurrecting the record.
    """

    def __init__(
        self,
        settings: BlobStoreSettings,
        blob_store: BlobStoreClient,
        session_factory: Callable[[], Session] = open_session,
        metrics: MetricsStore = default_metrics,
        on_listing_changed: Optional[Callable[[str], None]] = None,
        max_workers: int = UPLOAD_CONCURRENCY,
    ) -> None:
        self._settings = settings
        self._blob_store = blob_store
        self._session_factory = session_factory
        self._metrics = metrics
        self._on_listing_changed = on_listing_changed
        self._max_workers = max(1, max_workers)

    @property
    def settings(self) -> BlobStoreSettings:
        return self._settings

    @contextmanager
    def _metadata(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except OperationalError as exc:
            logger.error("event=metadata_unavailable error=%s", exc)
            raise MetadataUnavailable() from exc

    def _notify(self, owner_id: str) -> None:
        if self._on_listing_changed is None:
            return
        try:
            self._on_listing_changed(owner_id)
        except Exception as exc:
            logger.warning("event=listing_invalidation_failed owner_id=%s error=%s", owner_id, exc)

    def list_files(self, owner_id: str) -> list[File]:
        if not owner_id:
            raise Unauthorized("You must be signed in to access files")
        with self._metadata() as session:
            stmt = select(File).where(File.owner_id == owner_id).order_by(File.created_at.desc())
            return list(session.exec(stmt).all())

    def upload_file(
        self,
        owner_id: str,
        payload: Payload,
        file_name: str,
        declared_mime_type: Optional[str] = None,
    ) -> File:
        if not owner_id:
            raise Unauthorized("You must be signed in to upload files")
        name = (file_name or "").strip()
        if not name:
            raise ValidationError("Missing filename")

        size_bytes = payload_size(payload)
        limit = self._settings.max_upload_bytes
        if size_bytes > limit:
            logger.warning(
                "event=upload_rejected reason=max_size filename=%s size_bytes=%s limit_bytes=%s",
                name,
                size_bytes,
                limit,
            )
            raise PayloadTooLarge(f"File too large. Maximum allowed size is {human_bytes(limit)}.")

        self._settings.require_complete()

        try:
            blob = self._blob_store.upload(name, payload, declared_mime_type)
        except FileDeskError as exc:
            self._metrics.record_upload_failure()
            logger.warning(
                "event=upload_failed owner_id=%s filename=%s code=%s detail=%s",
                owner_id,
                name,
                exc.code,
                exc.message,
            )
            raise

        record = File(
            name=name,
            size_bytes=blob.size_bytes,
            content_type=blob.content_type or declared_mime_type or None,
            storage_path=blob.path,
            owner_id=owner_id,
        )
        try:
            with self._metadata() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
        except IntegrityError as exc:
            # The path belongs to an existing record, so the blob must not be removed.
            self._metrics.record_upload_failure()
            logger.error("event=upload_path_conflict storage_path=%s error=%s", blob.path, exc)
            raise UpstreamUploadFailed("Blob store returned a storage path that is already in use") from exc
        except (MetadataUnavailable, SQLAlchemyError) as exc:
            self._metrics.record_upload_failure()
            logger.error(
                "event=metadata_insert_failed storage_path=%s owner_id=%s error=%s", blob.path, owner_id, exc
            )
            self._discard_blob(blob.path, record.id, owner_id, reason="metadata insert failed")
            raise MetadataUnavailable("File was stored but could not be recorded. Please retry.") from exc

        self._metrics.record_upload(record.size_bytes)
        logger.info(
            "event=upload_success file_id=%s owner_id=%s storage_path=%s size_bytes=%s content_type=%s",
            record.id,
            owner_id,
            record.storage_path,
            record.size_bytes,
            record.content_type,
        )
        self._notify(owner_id)
        return record

    def upload_batch(self, owner_id: str, items: Sequence[UploadItem]) -> list[BatchItemResult]:
        """Upload every item as its own unit; one failure never undoes the others."""
        if not owner_id:
            raise Unauthorized("You must be signed in to upload files")
        if not items:
            raise ValidationError("No files received")

        workers = min(self._max_workers, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload") as pool:
            futures = [
                pool.submit(self.upload_file, owner_id, item.payload, item.file_name, item.content_type)
                for item in items
            ]

        results = []
        for item, future in zip(items, futures):
            try:
                results.append(BatchItemResult(item.file_name, record=future.result()))
            except FileDeskError as exc:
                results.append(BatchItemResult(item.file_name, error=exc))
            except Exception as exc:
                logger.exception("event=batch_item_failed owner_id=%s filename=%s", owner_id, item.file_name)
                error = FileDeskError(f"Unexpected error while uploading '{item.file_name}': {exc}")
                results.append(BatchItemResult(item.file_name, error=error))
        return results

    def delete_file(self, owner_id: str, file_id: str) -> DeleteOutcome:
        if not owner_id:
            raise Unauthorized("You must be signed in to delete files")

        with self._metadata() as session:
            stmt = select(File).where(File.id == file_id, File.owner_id == owner_id)
            record = session.exec(stmt).first()
            if record is None:
                raise NotFound("File not found or access denied")
            storage_path = record.storage_path
            result = session.exec(delete(File).where(File.id == file_id, File.owner_id == owner_id))
            if result.rowcount == 0:
                # A concurrent delete got there first.
                session.rollback()
                raise NotFound("File not found or access denied")
            session.commit()

        self._metrics.record_deletion()
        logger.info("event=file_deleted file_id=%s owner_id=%s storage_path=%s", file_id, owner_id, storage_path)

        blob_deleted = self._discard_blob(storage_path, file_id, owner_id, reason="delete")
        self._notify(owner_id)
        return DeleteOutcome(file_id=file_id, blob_deleted=blob_deleted)

    def purge_owner(self, owner_id: str) -> int:
        """Delete every file of an owner through the regular delete path."""
        purged = 0
        for record in self.list_files(owner_id):
            try:
                self.delete_file(owner_id, record.id)
            except NotFound:
                continue
            purged += 1
        return purged

    def _discard_blob(self, storage_path: str, file_id: str, owner_id: str, reason: str) -> bool:
        try:
            self._blob_store.delete(storage_path)
        except Exception as exc:
            self._record_orphan(storage_path, file_id, owner_id, f"{reason}: {exc}")
            return False
        return True

    def _record_orphan(self, storage_path: str, file_id: str, owner_id: str, reason: str) -> None:
        self._metrics.record_orphan()
        logger.warning(
            "event=blob_orphaned file_id=%s owner_id=%s storage_path=%s reason=%s",
            file_id,
            owner_id,
            storage_path,
            reason,
        )
        orphan = OrphanedBlob(
            storage_path=storage_path, file_id=file_id, owner_id=owner_id, reason=reason[:500]
        )
        try:
            with self._metadata() as session:
                session.add(orphan)
                session.commit()
        except MetadataUnavailable:
            logger.error("event=orphan_record_failed storage_path=%s", storage_path)

    def list_orphans(self, limit: int = 200) -> list[OrphanedBlob]:
        with self._metadata() as session:
            stmt = select(OrphanedBlob).order_by(OrphanedBlob.created_at).limit(limit)
            return list(session.exec(stmt).all())

    def reconcile_orphans(self, limit: int = 100) -> int:
        """Retry deleting recorded orphans. Returns how many blobs were reclaimed."""
        self._settings.require_complete()
        reclaimed = 0
        with self._metadata() as session:
            stmt = select(OrphanedBlob).order_by(OrphanedBlob.created_at).limit(limit)
            for orphan in session.exec(stmt).all():
                try:
                    self._blob_store.delete(orphan.storage_path)
                except Exception as exc:
                    orphan.attempts += 1
                    orphan.last_attempt_at = datetime.now(timezone.utc)
                    orphan.reason = f"retry: {exc}"[:500]
                    session.add(orphan)
                    logger.warning(
                        "event=orphan_retry_failed storage_path=%s attempts=%s error=%s",
                        orphan.storage_path,
                        orphan.attempts,
                        exc,
                    )
                else:
                    session.delete(orphan)
                    reclaimed += 1
                session.commit()

        self._metrics.record_reclaimed(reclaimed)
        if reclaimed:
            logger.info("event=orphans_reclaimed count=%s", reclaimed)
        return reclaimed
