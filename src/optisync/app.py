"""Application context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from optisync.config import Settings, load_settings
from optisync.favorites import FavoritesList
from optisync.gateways.base import BlobStorageGateway, DataGateway, IdentityGateway
from optisync.gateways.http import (
    BackendClient,
    HttpBlobStorage,
    HttpDataGateway,
    HttpIdentityGateway,
)
from optisync.logging_utils import configure_logging
from optisync.notifications import NotificationCenter
from optisync.screens.community import CommunityFeed
from optisync.screens.drawing import DrawingBoard
from optisync.session import AuthService, SessionContext
from optisync.session_store import MemorySessionStore, SqliteSessionStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Dependencies handed to each screen controller.

    Built once at startup. Screens get the active session explicitly
    instead of reaching for a global user object.
    """

    settings: Settings
    identity: IdentityGateway
    data: DataGateway
    blobs: BlobStorageGateway
    session_store: SqliteSessionStore | MemorySessionStore
    notifications: NotificationCenter
    auth: AuthService
    backend: BackendClient | None = None

    def require_session(self) -> SessionContext:
        ctx = self.auth.current
        if ctx is None:
            raise RuntimeError("No active session")
        return ctx

    def community(self) -> CommunityFeed:
        return CommunityFeed(
            self.require_session(),
            self.data,
            self.blobs,
            self.notifications,
            images_bucket=self.settings.storage.community_images_bucket,
        )

    def drawing(self) -> DrawingBoard:
        ctx = self.auth.current
        return DrawingBoard(
            self.data,
            self.blobs,
            self.notifications,
            user_email=ctx.user.email if ctx else None,
            thumbnails_bucket=self.settings.storage.drawing_thumbnails_bucket,
        )

    def favorites(self) -> FavoritesList:
        return FavoritesList(self.session_store)

    async def aclose(self) -> None:
        if self.backend is not None:
            await self.backend.aclose()
        self.session_store.close()


def build_app_context(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    session_store: SqliteSessionStore | MemorySessionStore | None = None,
) -> AppContext:
    """Create HTTP gateways from settings and restore any persisted session."""
    if settings is None:
        settings = load_settings()
        configure_logging()

    backend = BackendClient(
        settings.backend.url,
        settings.backend.anon_key,
        timeout=settings.backend.timeout_seconds,
        transport=transport,
    )
    store = session_store or SqliteSessionStore(
        settings.storage.session_db_path, wal=settings.storage.session_db_wal
    )
    identity = HttpIdentityGateway(backend)
    auth = AuthService(identity, store, token_sink=backend)

    context = AppContext(
        settings=settings,
        identity=identity,
        data=HttpDataGateway(backend),
        blobs=HttpBlobStorage(backend),
        session_store=store,
        notifications=NotificationCenter(),
        auth=auth,
        backend=backend,
    )
    restored = auth.restore()
    logger.info(
        "App context ready for %s (session %s)",
        backend.base_url,
        "restored" if restored else "none",
    )
    return context
