from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from filedesk.auth import Caller, require_admin, require_permission
from filedesk.config import RATE_LIMIT_PER_MINUTE
from filedesk.core.exceptions import error_payload
from filedesk.core.metrics import metrics
from filedesk.core.rate_limit import RateLimiter
from filedesk.db import ensure_connection, get_session
from filedesk.models import ApiKey, File as FileModel, OrphanedBlob, Permission, User
from filedesk.services import keys as key_registry
from filedesk.services import users as user_directory
from filedesk.services.stats import fetch_overview_totals
from filedesk.storage import FileOrchestrator, UploadItem, human_bytes

router = APIRouter()

logger = logging.getLogger("filedesk")

rate_limiter = RateLimiter(RATE_LIMIT_PER_MINUTE)


class ApiKeyCreate(BaseModel):
    name: str
    permission: str = Permission.READ.value


class ApiKeyPermissionUpdate(BaseModel):
    permission: str


class UserRoleUpdate(BaseModel):
    role: str


def get_orchestrator(request: Request) -> FileOrchestrator:
    return request.app.state.orchestrator


async def enforce_rate_limit(request: Request):
    client = request.client.host if request.client else "unknown"
    allowed, retry_after = rate_limiter.hit(client)
    if not allowed:
        headers = {"Retry-After": str(retry_after)}
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers=headers,
        )


def _file_payload(f: FileModel) -> dict:
    return {
        "id": f.id,
        "name": f.name,
        "size": f.size_bytes,
        "type": f.content_type,
        "path": f.storage_path,
        "owner_id": f.owner_id,
        "created_at": f.created_at,
    }


def _key_payload(k: ApiKey) -> dict:
    return {
        "id": k.id,
        "name": k.name,
        "key": k.key,
        "permission": k.permission.value,
        "owner_id": k.owner_id,
        "created_at": k.created_at,
    }


def _user_payload(u: User) -> dict:
    return {"id": u.id, "name": u.name, "email": u.email, "role": u.role.value, "created_at": u.created_at}


def _orphan_payload(o: OrphanedBlob) -> dict:
    return {
        "id": o.id,
        "storage_path": o.storage_path,
        "file_id": o.file_id,
        "owner_id": o.owner_id,
        "reason": o.reason,
        "attempts": o.attempts,
        "created_at": o.created_at,
        "last_attempt_at": o.last_attempt_at,
    }


@router.get("/health")
def health():
    return {"status": "ok", "database": ensure_connection()}


# Files


@router.get("/api/files")
def list_files(
    caller: Caller = Depends(require_permission(Permission.READ)),
    orchestrator: FileOrchestrator = Depends(get_orchestrator),
):
    files = orchestrator.list_files(caller.user_id)
    return {"files": [_file_payload(f) for f in files]}


@router.post("/api/files", status_code=201, dependencies=[Depends(enforce_rate_limit)])
async def upload_file(
    file: UploadFile = File(...),
    caller: Caller = Depends(require_permission(Permission.WRITE)),
    orchestrator: FileOrchestrator = Depends(get_orchestrator),
):
    # Blocking transfer runs in a worker thread; a disconnect does not cut it short.
    record = await run_in_threadpool(
        orchestrator.upload_file, caller.user_id, file.file, file.filename or "", file.content_type
    )
    return _file_payload(record)


@router.post("/api/files/batch", dependencies=[Depends(enforce_rate_limit)])
async def upload_batch(
    files: List[UploadFile] = File(...),
    caller: Caller = Depends(require_permission(Permission.WRITE)),
    orchestrator: FileOrchestrator = Depends(get_orchestrator),
):
    items = [UploadItem(f.filename or "", f.file, f.content_type) for f in files]
    results = await run_in_threadpool(orchestrator.upload_batch, caller.user_id, items)
    return {
        "uploaded": sum(1 for r in results if r.ok),
        "failed": sum(1 for r in results if not r.ok),
        "results": [
            {"name": r.file_name, "file": _file_payload(r.record)}
            if r.ok
            else {"name": r.file_name, "error": error_payload(r.error)}
            for r in results
        ],
    }


@router.delete("/api/files/{file_id}")
def delete_file(
    file_id: str,
    caller: Caller = Depends(require_permission(Permission.DELETE)),
    orchestrator: FileOrchestrator = Depends(get_orchestrator),
):
    outcome = orchestrator.delete_file(caller.user_id, file_id)
    return {"status": "deleted", "file_id": outcome.file_id, "blob_deleted": outcome.blob_deleted}


# API keys


@router.get("/api/keys")
def list_api_keys(_: Caller = Depends(require_admin), session: Session = Depends(get_session)):
    return {"keys": [_key_payload(k) for k in key_registry.list_keys(session)]}


@router.post("/api/keys", status_code=201)
def create_api_key(
    body: ApiKeyCreate,
    caller: Caller = Depends(require_admin),
    session: Session = Depends(get_session),
):
    api_key = key_registry.create_key(session, body.name, body.permission, caller.user_id)
    return _key_payload(api_key)


@router.patch("/api/keys/{key_id}")
def update_api_key_permission(
    key_id: str,
    body: ApiKeyPermissionUpdate,
    _: Caller = Depends(require_admin),
    session: Session = Depends(get_session),
):
    return _key_payload(key_registry.update_permission(session, key_id, body.permission))


@router.delete("/api/keys/{key_id}")
def revoke_api_key(key_id: str, _: Caller = Depends(require_admin), session: Session = Depends(get_session)):
    key_registry.revoke_key(session, key_id)
    return {"status": "revoked", "key_id": key_id}


# Users


@router.get("/api/users")
def list_users(_: Caller = Depends(require_admin), session: Session = Depends(get_session)):
    return {"users": [_user_payload(u) for u in user_directory.list_users(session)]}


@router.patch("/api/users/{user_id}")
def update_user_role(
    user_id: str,
    body: UserRoleUpdate,
    _: Caller = Depends(require_admin),
    session: Session = Depends(get_session),
):
    return _user_payload(user_directory.update_role(session, user_id, body.role))


@router.delete("/api/users/{user_id}")
def delete_user(
    user_id: str,
    _: Caller = Depends(require_admin),
    session: Session = Depends(get_session),
    orchestrator: FileOrchestrator = Depends(get_orchestrator),
):
    user_directory.get_user(session, user_id)
    purged = orchestrator.purge_owner(user_id)
    user_directory.delete_user(session, user_id)
    return {"status": "deleted", "user_id": user_id, "files_deleted": purged}


# Admin


@router.get("/api/overview")
def overview(_: Caller = Depends(require_admin), session: Session = Depends(get_session)):
    totals = fetch_overview_totals(session)
    return {
        **totals,
        "storage_human": human_bytes(totals["storage_bytes"]),
        "metrics": metrics.snapshot(),
    }


@router.get("/api/admin/orphans")
def list_orphans(
    _: Caller = Depends(require_admin),
    orchestrator: FileOrchestrator = Depends(get_orchestrator),
):
    return {"orphans": [_orphan_payload(o) for o in orchestrator.list_orphans()]}


@router.post("/api/admin/orphans/reconcile")
def reconcile_orphans(
    _: Caller = Depends(require_admin),
    orchestrator: FileOrchestrator = Depends(get_orchestrator),
):
    reclaimed = orchestrator.reconcile_orphans()
    return {"reclaimed": reclaimed, "remaining": len(orchestrator.list_orphans())}
