from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class APIResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None


# Scans
class ScanRequest(BaseModel):
    station_id: str = Field(min_length=1)
    raw: str


# Scanner
class ScannerStart(BaseModel):
    station_id: str = Field(min_length=1)
    venue_id: Optional[str] = None
    device_id: Optional[str] = None


class ScannerStop(BaseModel):
    station_id: str = Field(min_length=1)


class ScannerStatus(BaseModel):
    station_id: str
    venue_id: Optional[str] = None
    capturing: bool = False
    device: Optional[str] = None
    camera_error: Optional[Dict[str, Any]] = None
    is_processing: bool = False
    last_scan_at: Optional[datetime] = None
    recent_keys: int = 0
    last_outcome: Optional[Dict[str, Any]] = None


class StationsListResponse(BaseModel):
    items: List[ScannerStatus]
    total: int


# Codes
class BookingCodeRequest(BaseModel):
    booking_id: str


class MemberCodeRequest(BaseModel):
    member_id: str
    venue_id: Optional[str] = None


# Credits
class RedeemRequest(BaseModel):
    member_id: str
    venue_id: str
    amount: int
    processed_by: Optional[str] = None
