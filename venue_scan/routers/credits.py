from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..credits import RedemptionSummary, available_balance, redeem
from ..deps import get_db, require_token
from ..models import VenueCredit
from ..schemas import RedeemRequest
from ..utils import utcnow


router = APIRouter(prefix="/api", tags=["credits"], dependencies=[Depends(require_token)])


@router.get("/credits.balance")
def credits_balance(member_id: str = Query(...), venue_id: str = Query(...), db: Session = Depends(get_db)) -> dict:
    rows = db.execute(
        select(VenueCredit).where(VenueCredit.user_id == member_id, VenueCredit.venue_id == venue_id)
    ).scalars().all()
    credits = [
        {"status": c.status, "amount": c.amount, "used_amount": c.used_amount, "expires_at": c.expires_at}
        for c in rows
    ]
    return {"member_id": member_id, "venue_id": venue_id, "balance": available_balance(credits, utcnow())}


@router.post("/credits.redeem", response_model=RedemptionSummary)
def credits_redeem(payload: RedeemRequest, db: Session = Depends(get_db)):
    # RedemptionError is answered with 400 by the registered handler
    return redeem(db, payload.member_id, payload.venue_id, payload.amount, utcnow(), processed_by=payload.processed_by)
