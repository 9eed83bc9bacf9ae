from sqlalchemy import func
from sqlmodel import Session, select

from filedesk.models import ApiKey, File as FileModel, OrphanedBlob, User


def _count(session: Session, column) -> int:
    return int(session.exec(select(func.count(column))).one() or 0)


def fetch_overview_totals(session: Session) -> dict[str, int]:
    total_bytes = session.exec(select(func.coalesce(func.sum(FileModel.size_bytes), 0))).one()

    return {
        "users": _count(session, User.id),
        "files": _count(session, FileModel.id),
        "api_keys": _count(session, ApiKey.id),
        "storage_bytes": int(total_bytes or 0),
        "pending_orphans": _count(session, OrphanedBlob.id),
    }
