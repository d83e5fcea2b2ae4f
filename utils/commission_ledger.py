"""Commission ledger: one row per billed payment of a referred customer.

The unique index on ``payment_key`` makes recording exactly-once: webhook
redeliveries and concurrent deliveries of the same payment end up as a
``duplicate_payment`` no-op. The commission insert and the pending balance
credit share one transaction.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import AFFILIATE_COMMISSION_RATE, AFFILIATE_CURRENCY, logger
from models.affiliates import (
    AFFILIATE_APPROVED,
    COMMISSION_PENDING,
    REFERRAL_CONVERTED,
    Commission,
    Referral,
)
from utils.affiliate_errors import InvalidAmount
from utils.affiliate_registry import (
    BUCKET_PENDING,
    adjust_balance,
    dollars_to_cents,
    get_affiliate,
    to_decimal,
)


def commission_amount_cents(gross_amount, rate: Optional[Decimal] = None) -> int:
    """Commission owed on ``gross_amount`` dollars, rounded half-even to the cent."""
    gross = to_decimal(gross_amount)
    return dollars_to_cents(gross * (AFFILIATE_COMMISSION_RATE if rate is None else rate), strict=False)


def _skip(reason: str, **extra) -> dict:
    result = {"tracked": False, "reason": reason}
    result.update(extra)
    return result


def _key_recorded(db: Session, payment_key: str) -> bool:
    return db.query(Commission.id).filter(Commission.payment_key == payment_key).first() is not None


def record_commission(
    db: Session,
    payer_uid: Optional[str],
    gross_amount,
    payment_key: str,
    currency: str = AFFILIATE_CURRENCY,
) -> dict:
    key = (payment_key or "").strip()
    if not key:
        raise InvalidAmount("A payment key is required")
    if to_decimal(gross_amount) < 0:
        raise InvalidAmount("Gross amount cannot be negative")

    referral = None
    if payer_uid:
        referral = (
            db.query(Referral)
            .filter(Referral.user_uid == payer_uid, Referral.status == REFERRAL_CONVERTED)
            .first()
        )
    if not referral:
        return _skip("not_referred")

    affiliate = get_affiliate(db, referral.affiliate_id)
    if not affiliate or affiliate.status != AFFILIATE_APPROVED:
        logger.info(f"[ledger.record] affiliate={referral.affiliate_id} not approved; key={key} skipped")
        return _skip("affiliate_not_approved", affiliate_id=referral.affiliate_id)

    if _key_recorded(db, key):
        logger.info(f"[ledger.record] duplicate key={key}")
        return _skip("duplicate_payment", affiliate_id=affiliate.id)

    amount_cents = commission_amount_cents(gross_amount)
    if amount_cents <= 0:
        return _skip("zero_amount", affiliate_id=affiliate.id)

    commission = Commission(
        affiliate_id=affiliate.id,
        referral_id=referral.id,
        payment_key=key,
        gross_cents=dollars_to_cents(gross_amount, strict=False),
        amount_cents=amount_cents,
        currency=(currency or AFFILIATE_CURRENCY).lower(),
        status=COMMISSION_PENDING,
    )
    try:
        db.add(commission)
        db.flush()
        adjust_balance(db, affiliate.id, amount_cents, BUCKET_PENDING)
        db.commit()
    except IntegrityError:
        db.rollback()
        if _key_recorded(db, key):
            logger.info(f"[ledger.record] concurrent duplicate key={key}")
            return _skip("duplicate_payment", affiliate_id=affiliate.id)
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(f"[ledger.record] commission={commission.id} affiliate={affiliate.id} key={key} amount_cents={amount_cents}")
    return {
        "tracked": True,
        "commission_id": commission.id,
        "affiliate_id": affiliate.id,
        "amount_cents": amount_cents,
    }


def list_commissions(db: Session, affiliate_id: str, limit: int = 50) -> list[Commission]:
    return (
        db.query(Commission)
        .filter(Commission.affiliate_id == affiliate_id)
        .order_by(Commission.created_at.desc(), Commission.id.desc())
        .limit(max(1, min(int(limit or 50), 200)))
        .all()
    )


def commission_totals(db: Session, affiliate_id: str) -> dict:
    """Sum of commission amounts in cents keyed by commission status."""
    rows = (
        db.query(Commission.status, func.coalesce(func.sum(Commission.amount_cents), 0))
        .filter(Commission.affiliate_id == affiliate_id)
        .group_by(Commission.status)
        .all()
    )
    return {status: int(total or 0) for status, total in rows}
