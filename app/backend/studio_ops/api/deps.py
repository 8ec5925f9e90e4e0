"""Shared FastAPI dependencies for the studio API routes."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from studio_ops.db.dependencies import get_db_session
from studio_ops.services.event_bus import CacheInvalidationBus
from studio_ops.services.studio_service import StudioService

SESSION_DEP = Depends(get_db_session)


def get_event_bus(request: Request) -> CacheInvalidationBus:
    """Return the application-wide cache invalidation bus."""

    bus = getattr(request.app.state, "event_bus", None)
    if bus is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event bus is not available.",
        )
    return bus


EVENT_BUS_DEP = Depends(get_event_bus)


def get_studio_service(
    db: Session = SESSION_DEP,
    event_bus: CacheInvalidationBus = EVENT_BUS_DEP,
) -> StudioService:
    return StudioService(db, event_bus=event_bus)
