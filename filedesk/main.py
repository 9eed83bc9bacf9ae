import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from filedesk.api.routes import router
from filedesk.config import (
    BOOTSTRAP_ADMIN_ID,
    CORS_ORIGINS,
    ENABLE_RECONCILER,
    SESSION_PROXY_SECRET,
    SESSION_USER_HEADER,
    load_blob_store_settings,
)
from filedesk.core.exceptions import register_exception_handlers
from filedesk.db import init_db, session_scope
from filedesk.models import Role
from filedesk.reconciler import start_reconciler
from filedesk.services.blob_store import BlobStoreClient
from filedesk.services.users import ensure_user, update_role
from filedesk.storage import FileOrchestrator

app = FastAPI(title="filedesk console API", version="1.0.0")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("filedesk")

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()

# Without a proxy secret any client that reaches the API can claim a session.
if not SESSION_PROXY_SECRET:
    logger.warning("event=session_header_unverified header=%s", SESSION_USER_HEADER)

# Missing blob store settings abort startup here rather than failing per request.
settings = load_blob_store_settings()


def _listing_changed(owner_id: str) -> None:
    logger.info("event=listing_invalidated owner_id=%s", owner_id)


app.state.orchestrator = FileOrchestrator(
    settings,
    BlobStoreClient(settings),
    on_listing_changed=_listing_changed,
)

if BOOTSTRAP_ADMIN_ID:
    with session_scope() as session:
        admin = ensure_user(session, BOOTSTRAP_ADMIN_ID, Role.ADMIN)
        if admin.role != Role.ADMIN:
            update_role(session, BOOTSTRAP_ADMIN_ID, Role.ADMIN)
    logger.info("event=bootstrap_admin user_id=%s", BOOTSTRAP_ADMIN_ID)

app.include_router(router)
register_exception_handlers(app)

if ENABLE_RECONCILER:
    start_reconciler(app.state.orchestrator, logger)
