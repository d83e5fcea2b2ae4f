"""Affiliate accounts: creation, lookups, status and the earnings buckets.

Balances are only ever changed through :func:`adjust_balance`, which issues a
single UPDATE with column arithmetic so concurrent webhook deliveries for the
same affiliate cannot lose updates.
"""
import re
import secrets
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import AFFILIATE_AUTO_APPROVE, APP_URL, logger
from models.affiliates import (
    AFFILIATE_APPROVED,
    AFFILIATE_PENDING,
    AFFILIATE_STATUSES,
    Affiliate,
)
from models.user import User
from utils.affiliate_errors import (
    AffiliateError,
    AffiliateNotFound,
    DuplicateAffiliate,
    InsufficientFunds,
    InvalidAmount,
)

BUCKET_PENDING = "pending"
BUCKET_PAID = "paid"

_CODE_RE = re.compile(r"^[A-Z0-9]{4,32}$")
_CODE_ATTEMPTS = 10
_CENT = Decimal("0.01")
# Cent columns are 32-bit INTEGERs
_MAX_CENTS = 2**31 - 1


def to_decimal(amount) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Malformed amount: {amount!r}")
    if not value.is_finite():
        raise InvalidAmount(f"Malformed amount: {amount!r}")
    return value


def dollars_to_cents(amount, strict: bool = True) -> int:
    """Convert a dollar amount to integer cents.

    With ``strict`` the amount must already be at cent precision; otherwise it
    is rounded half-even.
    """
    value = to_decimal(amount)
    try:
        quantized = value.quantize(_CENT, rounding=ROUND_HALF_EVEN)
    except InvalidOperation:
        raise InvalidAmount(f"Amount out of range: {amount!r}")
    if strict and quantized != value:
        raise InvalidAmount("Amounts are limited to two decimal places")
    cents = int(quantized * 100)
    if abs(cents) > _MAX_CENTS:
        raise InvalidAmount(f"Amount out of range: {amount!r}")
    return cents


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_affiliate_code() -> str:
    return secrets.token_hex(4).upper()


def referral_link(code: str) -> str:
    return f"{APP_URL}/?ref={code}"


def _unique_code(db: Session) -> str:
    for _ in range(_CODE_ATTEMPTS):
        code = generate_affiliate_code()
        taken = db.query(Affiliate.id).filter(Affiliate.affiliate_code == code).first()
        if not taken:
            return code
    raise RuntimeError("could not generate a unique affiliate code")


def get_affiliate(db: Session, affiliate_id: str) -> Optional[Affiliate]:
    if not affiliate_id:
        return None
    return db.get(Affiliate, affiliate_id)


def get_affiliate_by_code(db: Session, code: Optional[str]) -> Optional[Affiliate]:
    normalized = normalize_code(code)
    if not _CODE_RE.match(normalized):
        return None
    return db.query(Affiliate).filter(Affiliate.affiliate_code == normalized).first()


def get_affiliate_by_user(db: Session, user_uid: Optional[str]) -> Optional[Affiliate]:
    if not user_uid:
        return None
    return db.query(Affiliate).filter(Affiliate.user_uid == user_uid).first()


def get_or_create_user(db: Session, uid: str, email: str, display_name: Optional[str] = None) -> User:
    """Return the user row for ``uid``, creating it from identity-provider data if missing."""
    user = db.get(User, uid)
    if user:
        return user
    user = User(uid=uid, email=(email or "").strip().lower(), display_name=display_name)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"[affiliates.registry] created user uid={uid}")
    return user


def get_user_by_email(db: Session, email: Optional[str]) -> Optional[User]:
    addr = (email or "").strip().lower()
    if not addr:
        return None
    return db.query(User).filter(func.lower(User.email) == addr).first()


def get_or_create_user_for_email(db: Session, email: str, display_name: Optional[str] = None) -> User:
    """Public registration path: reuse the account owning ``email`` or open a local one."""
    user = get_user_by_email(db, email)
    if user:
        return user
    return get_or_create_user(db, f"aff_{secrets.token_hex(12)}", email, display_name)


def _find_duplicate(db: Session, user_uid: str, email: Optional[str]) -> Optional[Affiliate]:
    conds = [Affiliate.user_uid == user_uid]
    if email:
        conds.append(func.lower(Affiliate.email) == email)
    return db.query(Affiliate).filter(or_(*conds)).first()


def create_affiliate(
    db: Session,
    user_uid: str,
    profile: Optional[dict] = None,
    status: Optional[str] = None,
) -> Affiliate:
    """Create the affiliate record for ``user_uid``.

    ``profile`` may carry email, first_name, last_name, payout_email,
    social_handle and has_social_following. Without an explicit ``status`` the
    product policy decides (auto-approval unless AFFILIATE_AUTO_APPROVE is off).
    """
    profile = profile or {}
    email = (profile.get("email") or "").strip().lower() or None
    if status is None:
        status = AFFILIATE_APPROVED if AFFILIATE_AUTO_APPROVE else AFFILIATE_PENDING
    if status not in AFFILIATE_STATUSES:
        raise AffiliateError(f"Unknown affiliate status: {status}")

    if _find_duplicate(db, user_uid, email):
        raise DuplicateAffiliate()

    affiliate = Affiliate(
        user_uid=user_uid,
        affiliate_code=_unique_code(db),
        email=email,
        first_name=(profile.get("first_name") or "").strip() or None,
        last_name=(profile.get("last_name") or "").strip() or None,
        social_handle=(profile.get("social_handle") or "").strip() or None,
        has_social_following=bool(profile.get("has_social_following")),
        payout_email=(profile.get("payout_email") or "").strip().lower() or email,
        status=status,
    )
    db.add(affiliate)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # Lost a race against a concurrent registration for the same user/email
        if _find_duplicate(db, user_uid, email):
            raise DuplicateAffiliate()
        raise
    db.refresh(affiliate)
    logger.info(f"[affiliates.registry] created affiliate id={affiliate.id} user={user_uid} code={affiliate.affiliate_code} status={status}")
    return affiliate


def set_affiliate_status(db: Session, affiliate_id: str, status: str) -> Affiliate:
    if status not in AFFILIATE_STATUSES:
        raise AffiliateError(f"Unknown affiliate status: {status}")
    affiliate = get_affiliate(db, affiliate_id)
    if not affiliate:
        raise AffiliateNotFound()
    previous = affiliate.status
    affiliate.status = status
    db.commit()
    db.refresh(affiliate)
    logger.info(f"[affiliates.registry] status id={affiliate_id} {previous} -> {status}")
    return affiliate


def update_payout_email(db: Session, affiliate: Affiliate, payout_email: str) -> None:
    """Remember a new payout destination. The caller commits."""
    email = (payout_email or "").strip().lower()
    if email and email != (affiliate.payout_email or ""):
        affiliate.payout_email = email


def adjust_balance(db: Session, affiliate_id: str, delta_cents: int, bucket: str) -> None:
    """Move money between the earnings buckets in one UPDATE statement.

    ``pending``: credit ``delta_cents`` to pending and lifetime.
    ``paid``: move ``delta_cents`` from pending to paid; the WHERE clause
    requires enough pending balance.

    Does not commit; callers bundle this with their own writes.
    """
    delta = int(delta_cents)
    if delta <= 0:
        raise InvalidAmount("Balance adjustments must be positive")

    if bucket == BUCKET_PENDING:
        stmt = (
            update(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .values(
                pending_earnings_cents=Affiliate.pending_earnings_cents + delta,
                lifetime_earnings_cents=Affiliate.lifetime_earnings_cents + delta,
                updated_at=func.now(),
            )
        )
    elif bucket == BUCKET_PAID:
        stmt = (
            update(Affiliate)
            .where(Affiliate.id == affiliate_id, Affiliate.pending_earnings_cents >= delta)
            .values(
                pending_earnings_cents=Affiliate.pending_earnings_cents - delta,
                paid_earnings_cents=Affiliate.paid_earnings_cents + delta,
                updated_at=func.now(),
            )
        )
    else:
        raise ValueError(f"unknown balance bucket: {bucket}")

    result = db.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        if db.query(Affiliate.id).filter(Affiliate.id == affiliate_id).first() is None:
            raise AffiliateNotFound()
        raise InsufficientFunds()

    # Loaded instances must re-read the buckets written in SQL
    loaded = db.identity_map.get(db.identity_key(Affiliate, affiliate_id))
    if loaded is not None:
        db.expire(loaded, ["pending_earnings_cents", "paid_earnings_cents", "lifetime_earnings_cents", "updated_at"])
    logger.info(f"[affiliates.balance] id={affiliate_id} bucket={bucket} delta_cents={delta}")
