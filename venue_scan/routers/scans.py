from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps import get_registry, require_token
from ..schemas import ScanRequest
from ..sessions import ScanOutcome, SessionRegistry


router = APIRouter(prefix="/api", tags=["scans"], dependencies=[Depends(require_token)])


@router.post("/scans.verify", response_model=ScanOutcome)
def scans_verify(payload: ScanRequest, registry: SessionRegistry = Depends(get_registry)):
    # Rejections are a display state for the operator, not an HTTP error
    session = registry.get_or_create(payload.station_id)
    return session.process(payload.raw)
