from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..codes import IssuedCode, issue_booking_code, issue_member_code
from ..deps import get_db, require_token
from ..schemas import BookingCodeRequest, MemberCodeRequest
from ..utils import utcnow


router = APIRouter(prefix="/api", tags=["codes"], dependencies=[Depends(require_token)])


@router.post("/codes.booking", response_model=IssuedCode)
def codes_booking(payload: BookingCodeRequest, db: Session = Depends(get_db)):
    issued = issue_booking_code(db, payload.booking_id, utcnow())
    if issued is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return issued


@router.post("/codes.member", response_model=IssuedCode)
def codes_member(payload: MemberCodeRequest, db: Session = Depends(get_db)):
    issued = issue_member_code(db, payload.member_id, payload.venue_id, utcnow())
    if issued is None:
        raise HTTPException(status_code=404, detail="Member not found")
    return issued
