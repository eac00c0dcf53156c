from __future__ import annotations

from fastapi import HTTPException, Request

from ..store import FamilyStore
from ..sync import SyncCoordinator


def get_store(request: Request) -> FamilyStore:
    return request.app.state.store


def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator


def require_hydrated(store: FamilyStore) -> None:
    if not store.is_hydrated:
        raise HTTPException(status_code=503, detail="Store is not hydrated yet.")
