from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..capture import StreamConstraints
from ..config import get_settings
from ..deps import get_registry, require_token
from ..errors import CameraError
from ..schemas import APIResponse, ScannerStart, ScannerStatus, ScannerStop, StationsListResponse
from ..sessions import SessionRegistry


router = APIRouter(prefix="/api", tags=["scanner"], dependencies=[Depends(require_token)])


@router.post("/scanner.start", response_model=ScannerStatus)
async def scanner_start(payload: ScannerStart, request: Request, registry: SessionRegistry = Depends(get_registry)):
    settings = get_settings()
    session = registry.get_or_create(payload.station_id, payload.venue_id)
    camera = request.app.state.camera_factory()
    decoder = request.app.state.decoder_factory()
    constraints = StreamConstraints(width=settings.camera_width, height=settings.camera_height, fps=settings.camera_fps)
    try:
        await session.start_capture(
            camera,
            decoder,
            interval=settings.capture_interval_ms / 1000.0,
            constraints=constraints,
            device_id=payload.device_id,
        )
    except CameraError:
        await session.stop_capture()
        raise
    return session.status()


@router.post("/scanner.stop", response_model=APIResponse)
async def scanner_stop(payload: ScannerStop, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(payload.station_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown station")
    await session.stop_capture()
    return APIResponse(ok=True, message="stopped")


@router.get("/scanner.status", response_model=ScannerStatus)
def scanner_status(station_id: str = Query(...), registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(station_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown station")
    return session.status()


@router.get("/scanner.list", response_model=StationsListResponse)
def scanner_list(registry: SessionRegistry = Depends(get_registry)):
    items = []
    for station_id in registry.stations():
        session = registry.get(station_id)
        if session is not None:
            items.append(session.status())
    return {"items": items, "total": len(items)}
