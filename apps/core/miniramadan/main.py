from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import AppConfig, get_config
from .db import SqliteSnapshotStorage
from .gateway import Session
from .metrics import SqliteMetricsRecorder
from .routes import activity as activity_routes
from .routes import progress as progress_routes
from .routes import sync as sync_routes
from .store import FamilyStore
from .supabase import SupabaseGateway, client_for_token
from .sync import GatewayFactory, SyncCoordinator

logger = logging.getLogger(__name__)


def supabase_gateway_factory(config: AppConfig) -> GatewayFactory:
    def factory(session: Session) -> SupabaseGateway:
        return SupabaseGateway(
            client_for_token(session.access_token, timeout=config.request_timeout_seconds)
        )

    return factory


def build_store(config: AppConfig) -> FamilyStore:
    storage = SqliteSnapshotStorage(config.snapshot_key, config.resolved_database_path)
    return FamilyStore(
        storage,
        max_pending_retries=config.max_pending_retries,
        default_profile_types=config.default_profile_types,
    )


def build_coordinator(store: FamilyStore, config: AppConfig) -> SyncCoordinator:
    return SyncCoordinator(
        store,
        supabase_gateway_factory(config),
        realtime_kinds=config.realtime_kinds,
        clear_cache_on_sign_out=config.clear_cache_on_sign_out,
        teardown_timeout=config.teardown_timeout_seconds,
        metrics=SqliteMetricsRecorder(config.resolved_database_path),
    )


def create_app(
    store: Optional[FamilyStore] = None,
    coordinator: Optional[SyncCoordinator] = None,
    *,
    config: Optional[AppConfig] = None,
) -> FastAPI:
    config = config or get_config()
    store = store or build_store(config)
    coordinator = coordinator or build_coordinator(store, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        store.hydrate()
        await coordinator.on_hydrated()
        yield
        await coordinator.before_teardown()
        await coordinator.close()
        logger.info("Shut down", extra={"pending_count": store.pending_count})

    app = FastAPI(
        title="MiniRamadan Core",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "capacitor://localhost",
        ],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )
    app.state.store = store
    app.state.coordinator = coordinator

    app.include_router(activity_routes.router)
    app.include_router(progress_routes.router)
    app.include_router(sync_routes.router)
    return app
