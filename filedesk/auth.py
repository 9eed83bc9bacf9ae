from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from filedesk.config import SESSION_PROXY_SECRET, SESSION_PROXY_SECRET_HEADER, SESSION_USER_HEADER
from filedesk.core.exceptions import MetadataUnavailable, Unauthorized
from filedesk.db import get_session
from filedesk.models import Permission, Role, User
from filedesk.services.keys import find_by_token

logger = logging.getLogger("filedesk.auth")


@dataclass(frozen=True)
class Caller:
    user_id: str
    via: str  # "session" or "api_key"
    key_id: Optional[str] = None
    permission: Optional[Permission] = None


def _session_user(request: Request) -> Optional[str]:
    """User id forwarded by the upstream auth proxy, if any."""
    value = request.headers.get(SESSION_USER_HEADER, "").strip()
    if not value:
        return None
    if SESSION_PROXY_SECRET:
        presented = request.headers.get(SESSION_PROXY_SECRET_HEADER, "")
        if not secrets.compare_digest(presented.encode(), SESSION_PROXY_SECRET.encode()):
            logger.warning("event=auth_rejected reason=untrusted_session_header path=%s", request.url.path)
            return None
    return value


def _presented_key(request: Request) -> Optional[str]:
    token = request.headers.get("x-api-key") or request.query_params.get("api_key")
    return token.strip() if token else None


def resolve_caller(request: Request, session: Session) -> Caller:
    user_id = _session_user(request)
    if user_id:
        return Caller(user_id=user_id, via="session")

    token = _presented_key(request)
    if not token:
        raise Unauthorized("Missing session or API key")
    try:
        api_key = find_by_token(session, token)
    except OperationalError as exc:
        raise MetadataUnavailable("Auth backend unavailable") from exc
    if api_key is None:
        logger.warning("event=auth_rejected reason=unknown_key path=%s", request.url.path)
        raise Unauthorized("Invalid or missing API key")
    return Caller(user_id=api_key.owner_id, via="api_key", key_id=api_key.id, permission=api_key.permission)


def require_permission(required: Permission):
    """Dependency factory: a session, or an API key whose grant covers ``required``."""

    def dependency(request: Request, session: Session = Depends(get_session)) -> Caller:
        caller = resolve_caller(request, session)
        if caller.via == "api_key" and not caller.permission.grants(required):
            logger.warning(
                "event=auth_rejected reason=missing_permission key_id=%s need=%s have=%s",
                caller.key_id,
                required.value,
                caller.permission.value,
            )
            raise Unauthorized(f"API key lacks {required.value} permission")
        return caller

    return dependency


def require_admin(request: Request, session: Session = Depends(get_session)) -> Caller:
    """Key and user administration need an interactive session of an ADMIN user."""
    user_id = _session_user(request)
    if not user_id:
        raise Unauthorized("An interactive admin session is required")
    try:
        user = session.get(User, user_id)
    except OperationalError as exc:
        raise MetadataUnavailable("Auth backend unavailable") from exc
    if user is None or user.role != Role.ADMIN:
        logger.warning("event=auth_rejected reason=not_admin user_id=%s", user_id)
        raise Unauthorized("Admin role required")
    return Caller(user_id=user_id, via="session")
