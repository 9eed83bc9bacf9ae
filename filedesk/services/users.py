from __future__ import annotations

import logging

from sqlmodel import Session, select

from filedesk.core.exceptions import NotFound, ValidationError
from filedesk.models import ApiKey, Role, User

logger = logging.getLogger("filedesk.users")


def parse_role(value) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown role '{value}'. Expected ADMIN or USER") from None


def get_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def list_users(session: Session) -> list[User]:
    return list(session.exec(select(User).order_by(User.created_at.desc())).all())


def ensure_user(session: Session, user_id: str, role: Role = Role.USER) -> User:
    """Create the user if missing; an existing user keeps its role."""
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id, role=role)
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("event=user_provisioned user_id=%s role=%s", user_id, role.value)
    return user


def update_role(session: Session, user_id: str, role) -> User:
    new_role = parse_role(role)
    user = get_user(session, user_id)
    user.role = new_role
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("event=user_role_changed user_id=%s role=%s", user_id, new_role.value)
    return user


def delete_user(session: Session, user_id: str) -> None:
    """Remove the user and every API key they own. Files must be purged beforehand."""
    user = get_user(session, user_id)
    for api_key in session.exec(select(ApiKey).where(ApiKey.owner_id == user_id)).all():
        session.delete(api_key)
    session.delete(user)
    session.commit()
    logger.info("event=user_deleted user_id=%s", user_id)
