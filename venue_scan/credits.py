from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import RedemptionError
from .models import SystemLog, VenueCredit
from .utils import as_utc, to_storage


logger = logging.getLogger(__name__)


def is_spendable(credit: Mapping[str, Any], now: datetime) -> bool:
    if credit.get("status") != "active":
        return False
    if (credit.get("amount") or 0) - (credit.get("used_amount") or 0) <= 0:
        return False
    return _unexpired(credit, now)


def available_balance(credits: Iterable[Mapping[str, Any]], now: datetime) -> int:
    """Σamount − Σused_amount over active, unexpired credits."""
    live = [c for c in credits if c.get("status") == "active" and _unexpired(c, now)]
    total = sum(c.get("amount") or 0 for c in live)
    used = sum(c.get("used_amount") or 0 for c in live)
    return total - used


def _unexpired(credit: Mapping[str, Any], now: datetime) -> bool:
    expires_at = credit.get("expires_at")
    return expires_at is None or as_utc(now) < as_utc(expires_at)


class CreditDeduction(BaseModel):
    credit_id: str
    amount: int
    remaining_balance: int


class RedemptionSummary(BaseModel):
    member_id: str
    venue_id: str
    amount: int
    deductions: List[CreditDeduction]
    remaining_balance: int


def redeem(
    db: Session,
    member_id: str,
    venue_id: str,
    amount: int,
    now: datetime,
    processed_by: Optional[str] = None,
) -> RedemptionSummary:
    """Spend ``amount`` from the member's credits at a venue, soonest-expiring first.

    Each deduction is conditioned on the ``used_amount`` that was read, so two
    stations redeeming against the same credit cannot both succeed; the loser
    gets a ``RedemptionError`` and nothing is committed.
    """
    if amount <= 0:
        raise RedemptionError("Redemption amount must be positive")

    rows = db.execute(
        select(VenueCredit).where(
            VenueCredit.user_id == member_id,
            VenueCredit.venue_id == venue_id,
            VenueCredit.status == "active",
        )
    ).scalars().all()
    spendable = [c for c in rows if is_spendable(_credit_dict(c), now)]
    # No expiry sorts last
    spendable.sort(key=lambda c: (c.expires_at is None, c.expires_at or datetime.max, c.created_at))

    balance = sum(c.remaining_balance for c in spendable)
    if balance < amount:
        raise RedemptionError(f"Insufficient credit: available {balance}, requested {amount}")

    outstanding = amount
    deductions: List[CreditDeduction] = []
    try:
        for credit in spendable:
            if outstanding <= 0:
                break
            take = min(outstanding, credit.remaining_balance)
            new_used = credit.used_amount + take
            values = {"used_amount": new_used}
            if new_used >= credit.amount:
                values["status"] = "used"
            result = db.execute(
                update(VenueCredit)
                .where(VenueCredit.id == credit.id, VenueCredit.used_amount == credit.used_amount)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                raise RedemptionError("Credit balance changed during redemption; please retry")
            deductions.append(
                CreditDeduction(credit_id=credit.id, amount=take, remaining_balance=credit.amount - new_used)
            )
            outstanding -= take

        db.add(
            SystemLog(
                ts=to_storage(now),
                actor=processed_by or "scanner",
                action="credit_redeem",
                entity="member",
                entity_id=member_id,
                status="ok",
                message=f"venue={venue_id} amount={amount}",
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("redeemed %s from member=%s venue=%s across %d credit(s)", amount, member_id, venue_id, len(deductions))
    return RedemptionSummary(
        member_id=member_id,
        venue_id=venue_id,
        amount=amount,
        deductions=deductions,
        remaining_balance=balance - amount,
    )


def _credit_dict(credit: VenueCredit) -> dict:
    return {
        "status": credit.status,
        "amount": credit.amount,
        "used_amount": credit.used_amount,
        "expires_at": credit.expires_at,
    }
