"""Referral state machine: clicked -> signed_up -> converted.

Transitions are written as conditional UPDATEs on the expected current
status, so a retried signup or a redelivered payment webhook racing the
original request advances a referral at most once. Repeating a transition that
already happened is a no-op; going backwards or skipping ``signed_up`` raises
:class:`InvalidTransition`.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import logger
from models.affiliates import (
    AFFILIATE_APPROVED,
    REFERRAL_CLICKED,
    REFERRAL_CONVERTED,
    REFERRAL_SIGNED_UP,
    Referral,
)
from utils.affiliate_errors import InvalidTransition
from utils.affiliate_registry import get_affiliate_by_code
from utils.referral_tracking import resolve_attribution

_NEXT_STATUS = {
    REFERRAL_CLICKED: REFERRAL_SIGNED_UP,
    REFERRAL_SIGNED_UP: REFERRAL_CONVERTED,
}


def check_transition(current: str, target: str) -> None:
    if _NEXT_STATUS.get(current) != target:
        raise InvalidTransition(f"Cannot move referral from {current} to {target}")


def get_referral_for_user(db: Session, user_uid: Optional[str]) -> Optional[Referral]:
    if not user_uid:
        return None
    return db.query(Referral).filter(Referral.user_uid == user_uid).first()


def bind_signup(db: Session, referral_id: str, user_uid: str) -> Optional[Referral]:
    """Attach ``user_uid`` to a clicked referral and advance it to signed_up.

    Returns the referral (unchanged if it was already past ``clicked``), or
    None when the referral is unknown or the user is already attributed
    elsewhere.
    """
    referral = db.get(Referral, referral_id) if referral_id else None
    if not referral:
        logger.info(f"[referrals.signup] unknown referral={referral_id} user={user_uid}")
        return None
    if referral.status != REFERRAL_CLICKED:
        logger.info(f"[referrals.signup] no-op referral={referral_id} status={referral.status}")
        return referral
    check_transition(referral.status, REFERRAL_SIGNED_UP)

    if get_referral_for_user(db, user_uid):
        logger.info(f"[referrals.signup] user={user_uid} already attributed")
        return None

    try:
        result = db.execute(
            update(Referral)
            .where(Referral.id == referral_id, Referral.status == REFERRAL_CLICKED)
            .values(
                status=REFERRAL_SIGNED_UP,
                user_uid=user_uid,
                signed_up_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except IntegrityError:
        # Unique user_uid: a concurrent signup attributed this user first
        db.rollback()
        logger.info(f"[referrals.signup] user={user_uid} attributed concurrently")
        return None

    db.refresh(referral)
    if result.rowcount == 1:
        logger.info(f"[referrals.signup] referral={referral_id} user={user_uid} -> signed_up")
    else:
        logger.info(f"[referrals.signup] referral={referral_id} advanced concurrently status={referral.status}")
    return referral


def bind_conversion(db: Session, referral_id: str) -> Optional[Referral]:
    """Advance a signed_up referral to converted; repeat calls are no-ops."""
    referral = db.get(Referral, referral_id) if referral_id else None
    if not referral:
        logger.info(f"[referrals.convert] unknown referral={referral_id}")
        return None
    if referral.status == REFERRAL_CONVERTED:
        return referral
    check_transition(referral.status, REFERRAL_CONVERTED)

    result = db.execute(
        update(Referral)
        .where(Referral.id == referral_id, Referral.status == REFERRAL_SIGNED_UP)
        .values(status=REFERRAL_CONVERTED, converted_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(referral)
    if result.rowcount == 1:
        logger.info(f"[referrals.convert] referral={referral_id} -> converted")
    return referral


def bind_conversion_for_user(db: Session, user_uid: str) -> Optional[Referral]:
    """Convert the referral attributed to a paying user, if any."""
    referral = get_referral_for_user(db, user_uid)
    if not referral:
        return None
    return bind_conversion(db, referral.id)


def attribute_signup(db: Session, token: Optional[str], user_uid: str) -> dict:
    """Redeem the attribution token of a freshly registered user.

    When the token's referral is gone or was redeemed by someone else, a new
    referral is opened directly in ``signed_up`` as long as the affiliate is
    still approved.
    """
    attribution = resolve_attribution(token)
    if not attribution:
        return {"tracked": False, "reason": "no_attribution"}

    existing = get_referral_for_user(db, user_uid)
    if existing:
        return {"tracked": False, "reason": "already_attributed", "referral_id": existing.id}

    referral = db.get(Referral, attribution["referral_id"])
    if referral and referral.status == REFERRAL_CLICKED:
        bound = bind_signup(db, referral.id, user_uid)
        if bound and bound.user_uid == user_uid:
            return {"tracked": True, "referral_id": bound.id, "affiliate_id": bound.affiliate_id}

    affiliate = get_affiliate_by_code(db, attribution["affiliate_code"])
    if not affiliate or affiliate.status != AFFILIATE_APPROVED:
        return {"tracked": False, "reason": "affiliate_unavailable"}

    fresh = Referral(
        affiliate_id=affiliate.id,
        user_uid=user_uid,
        status=REFERRAL_SIGNED_UP,
        signed_up_at=datetime.now(timezone.utc),
    )
    db.add(fresh)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return {"tracked": False, "reason": "already_attributed"}
    db.refresh(fresh)
    logger.info(f"[referrals.signup] opened referral={fresh.id} affiliate={affiliate.id} user={user_uid} from token")
    return {"tracked": True, "referral_id": fresh.id, "affiliate_id": affiliate.id}
