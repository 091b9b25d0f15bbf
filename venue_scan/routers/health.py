from __future__ import annotations

from fastapi import APIRouter, Request

from ..config import get_settings


router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request) -> dict:
    settings = get_settings()
    registry = getattr(request.app.state, "sessions", None)
    return {
        "status": "ok",
        "environment": settings.environment,
        "stations": len(registry.stations()) if registry is not None else 0,
    }
