from __future__ import annotations

import logging
import secrets
import string
from typing import Optional

from sqlmodel import Session, select

from filedesk.core.exceptions import NotFound, ValidationError
from filedesk.models import ApiKey, Permission

logger = logging.getLogger("filedesk.keys")

KEY_PREFIX = "sk_"
KEY_LENGTH = 32
_KEY_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_token(length: int = KEY_LENGTH) -> str:
    return KEY_PREFIX + "".join(secrets.choice(_KEY_ALPHABET) for _ in range(length))


def parse_permission(value) -> Permission:
    if isinstance(value, Permission):
        return value
    try:
        return Permission(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(p.value for p in Permission)
        raise ValidationError(f"Unknown permission '{value}'. Expected one of: {allowed}") from None


def _get_or_404(session: Session, key_id: str) -> ApiKey:
    api_key = session.get(ApiKey, key_id)
    if api_key is None:
        raise NotFound("API key not found")
    return api_key


def list_keys(session: Session) -> list[ApiKey]:
    """All keys, newest first. Tokens are returned in plaintext; callers mask them."""
    return list(session.exec(select(ApiKey).order_by(ApiKey.created_at.desc())).all())


def create_key(session: Session, name: str, permission, owner_id: str) -> ApiKey:
    label = (name or "").strip()
    if not label:
        raise ValidationError("API key name must not be empty")
    grant = parse_permission(permission)

    api_key = ApiKey(name=label, key=generate_token(), permission=grant, owner_id=owner_id)
    session.add(api_key)
    session.commit()
    session.refresh(api_key)
    logger.info(
        "event=api_key_created key_id=%s owner_id=%s permission=%s", api_key.id, owner_id, grant.value
    )
    return api_key


def update_permission(session: Session, key_id: str, permission) -> ApiKey:
    grant = parse_permission(permission)
    api_key = _get_or_404(session, key_id)
    if api_key.permission != grant:
        api_key.permission = grant
        session.add(api_key)
        session.commit()
        session.refresh(api_key)
        logger.info("event=api_key_permission_changed key_id=%s permission=%s", key_id, grant.value)
    return api_key


def revoke_key(session: Session, key_id: str) -> None:
    api_key = _get_or_404(session, key_id)
    session.delete(api_key)
    session.commit()
    logger.info("event=api_key_revoked key_id=%s", key_id)


def find_by_token(session: Session, token: str) -> Optional[ApiKey]:
    if not token:
        return None
    return session.exec(select(ApiKey).where(ApiKey.key == token)).first()
