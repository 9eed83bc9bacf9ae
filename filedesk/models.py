from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Permission(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    FULL_ACCESS = "FULL_ACCESS"

    def grants(self, required: "Permission") -> bool:
        """FULL_ACCESS implies every grant; the others only grant themselves."""
        return self is Permission.FULL_ACCESS or self is required


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class User(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: Optional[str] = Field(default=None, nullable=True)
    email: Optional[str] = Field(default=None, nullable=True, index=True)
    role: Role = Field(default=Role.USER)
    created_at: datetime = Field(default_factory=_utcnow)


class File(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    size_bytes: int = Field(ge=0)
    content_type: Optional[str] = Field(default=None, nullable=True)
    storage_path: str = Field(unique=True)  # Never rewritten once the blob exists
    owner_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)


class ApiKey(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    key: str = Field(unique=True, index=True)
    permission: Permission = Field(default=Permission.READ)
    owner_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)


class OrphanedBlob(SQLModel, table=True):
    """A blob whose file record is gone but whose remote delete did not succeed."""

    id: Optional[int] = Field(default=None, primary_key=True)
    storage_path: str = Field(index=True)
    file_id: str
    owner_id: str
    reason: str = ""
    attempts: int = Field(default=1)
    created_at: datetime = Field(default_factory=_utcnow)
    last_attempt_at: datetime = Field(default_factory=_utcnow)
