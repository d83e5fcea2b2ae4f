"""Payout requests and the operator actions that settle them.

Requesting a payout moves no money: the pending balance only moves to paid
when an operator completes the payout.
"""
import re
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from core.config import AFFILIATE_MINIMUM_PAYOUT, AFFILIATE_MINIMUM_PAYOUT_CENTS, logger
from models.affiliates import (
    AFFILIATE_APPROVED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    PAYOUT_OPEN_STATUSES,
    PAYOUT_PAID,
    PAYOUT_PROCESSING,
    PAYOUT_REJECTED,
    PAYOUT_REQUESTED,
    Affiliate,
    Commission,
    Payout,
    cents_to_dollars,
)
from utils.affiliate_errors import (
    AffiliateNotFound,
    BelowMinimum,
    InsufficientFunds,
    InvalidAmount,
    InvalidPayoutDestination,
    InvalidTransition,
    NotApproved,
    PayoutNotFound,
)
from utils.affiliate_registry import (
    BUCKET_PAID,
    adjust_balance,
    dollars_to_cents,
    update_payout_email,
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def open_payout_cents(db: Session, affiliate_id: str) -> int:
    total = (
        db.query(func.coalesce(func.sum(Payout.amount_cents), 0))
        .filter(Payout.affiliate_id == affiliate_id, Payout.status.in_(PAYOUT_OPEN_STATUSES))
        .scalar()
    )
    return int(total or 0)


def available_balance_cents(db: Session, affiliate) -> int:
    """Pending earnings not already claimed by an open payout request."""
    return max(0, int(affiliate.pending_earnings_cents or 0) - open_payout_cents(db, affiliate.id))


def locked_affiliate_query(db: Session, affiliate_id: str):
    """Affiliate row locked until the transaction ends.

    Serialises payout requests per affiliate so two concurrent requests
    cannot both claim the same available balance.
    """
    return (
        db.query(Affiliate)
        .filter(Affiliate.id == affiliate_id)
        .with_for_update()
        .populate_existing()
    )


def request_payout(db: Session, affiliate_id: str, amount=None, destination: Optional[str] = None) -> Payout:
    """Open a payout request for ``amount`` dollars (default: everything available)."""
    try:
        payout = _open_payout(db, affiliate_id, amount, destination)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payout)
    logger.info(f"[payouts.request] payout={payout.id} affiliate={payout.affiliate_id} amount_cents={payout.amount_cents}")
    return payout


def _open_payout(db: Session, affiliate_id: str, amount, destination: Optional[str]) -> Payout:
    affiliate = locked_affiliate_query(db, affiliate_id).first() if affiliate_id else None
    if not affiliate:
        raise AffiliateNotFound()
    if affiliate.status != AFFILIATE_APPROVED:
        raise NotApproved()

    minimum_msg = f"Minimum payout is ${AFFILIATE_MINIMUM_PAYOUT:.2f}"
    pending = int(affiliate.pending_earnings_cents or 0)
    if pending < AFFILIATE_MINIMUM_PAYOUT_CENTS:
        raise BelowMinimum(minimum_msg)

    available = available_balance_cents(db, affiliate)
    if amount is None:
        amount_cents = available
    else:
        amount_cents = dollars_to_cents(amount, strict=True)
        if amount_cents < 0:
            raise InvalidAmount("Payout amount cannot be negative")
    if amount_cents < AFFILIATE_MINIMUM_PAYOUT_CENTS:
        raise BelowMinimum(minimum_msg)
    if amount_cents > available:
        raise InsufficientFunds(f"Available balance is ${cents_to_dollars(available):.2f}")

    dest = (destination or affiliate.payout_email or "").strip().lower()
    if not dest or not _EMAIL_RE.match(dest):
        raise InvalidPayoutDestination()
    if destination:
        update_payout_email(db, affiliate, dest)

    payout = Payout(
        affiliate_id=affiliate.id,
        amount_cents=amount_cents,
        destination=dest,
        status=PAYOUT_REQUESTED,
    )
    db.add(payout)
    db.flush()
    return payout


def get_payout(db: Session, payout_id: str) -> Payout:
    payout = db.get(Payout, payout_id) if payout_id else None
    if not payout:
        raise PayoutNotFound()
    return payout


def list_payouts(db: Session, affiliate_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100) -> list[Payout]:
    q = db.query(Payout)
    if affiliate_id:
        q = q.filter(Payout.affiliate_id == affiliate_id)
    if status:
        q = q.filter(Payout.status == status)
    return q.order_by(Payout.requested_at.desc()).limit(max(1, min(int(limit or 100), 500))).all()


def _claim(db: Session, payout: Payout, from_statuses, values: dict) -> bool:
    result = db.execute(
        update(Payout)
        .where(Payout.id == payout.id, Payout.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_payout_processing(db: Session, payout_id: str, notes: Optional[str] = None) -> Payout:
    payout = get_payout(db, payout_id)
    if payout.status == PAYOUT_PROCESSING:
        return payout
    if payout.status != PAYOUT_REQUESTED:
        raise InvalidTransition(f"Cannot move payout from {payout.status} to {PAYOUT_PROCESSING}")
    values = {"status": PAYOUT_PROCESSING}
    if notes:
        values["notes"] = notes
    if not _claim(db, payout, (PAYOUT_REQUESTED,), values):
        db.rollback()
        raise InvalidTransition("Payout was updated concurrently")
    db.commit()
    db.refresh(payout)
    logger.info(f"[payouts.processing] payout={payout.id}")
    return payout


def _settle_commissions(db: Session, payout: Payout) -> int:
    """Mark the oldest pending commissions covered by the payout as paid."""
    remaining = int(payout.amount_cents)
    settled = 0
    commissions = (
        db.query(Commission)
        .filter(Commission.affiliate_id == payout.affiliate_id, Commission.status == COMMISSION_PENDING)
        .order_by(Commission.created_at.asc(), Commission.id.asc())
        .all()
    )
    for commission in commissions:
        if commission.amount_cents > remaining:
            break
        commission.status = COMMISSION_PAID
        commission.payout_id = payout.id
        remaining -= commission.amount_cents
        settled += 1
    return settled


def complete_payout(db: Session, payout_id: str, notes: Optional[str] = None) -> Payout:
    """Pay out: move the amount from pending to paid in one transaction."""
    payout = get_payout(db, payout_id)
    if payout.status == PAYOUT_PAID:
        return payout
    if payout.status not in PAYOUT_OPEN_STATUSES:
        raise InvalidTransition(f"Cannot move payout from {payout.status} to {PAYOUT_PAID}")

    values = {"status": PAYOUT_PAID, "processed_at": datetime.now(timezone.utc)}
    if notes:
        values["notes"] = notes
    try:
        if not _claim(db, payout, PAYOUT_OPEN_STATUSES, values):
            db.rollback()
            db.refresh(payout)
            if payout.status == PAYOUT_PAID:
                return payout
            raise InvalidTransition(f"Cannot move payout from {payout.status} to {PAYOUT_PAID}")
        adjust_balance(db, payout.affiliate_id, payout.amount_cents, BUCKET_PAID)
        settled = _settle_commissions(db, payout)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(payout)
    logger.info(f"[payouts.complete] payout={payout.id} affiliate={payout.affiliate_id} amount_cents={payout.amount_cents} commissions={settled}")
    return payout


def reject_payout(db: Session, payout_id: str, notes: Optional[str] = None) -> Payout:
    payout = get_payout(db, payout_id)
    if payout.status == PAYOUT_REJECTED:
        return payout
    if payout.status not in PAYOUT_OPEN_STATUSES:
        raise InvalidTransition(f"Cannot move payout from {payout.status} to {PAYOUT_REJECTED}")

    values = {"status": PAYOUT_REJECTED, "processed_at": datetime.now(timezone.utc)}
    if notes:
        values["notes"] = notes
    if not _claim(db, payout, PAYOUT_OPEN_STATUSES, values):
        db.rollback()
        raise InvalidTransition("Payout was updated concurrently")
    db.commit()
    db.refresh(payout)
    logger.info(f"[payouts.reject] payout={payout.id} affiliate={payout.affiliate_id}")
    return payout
