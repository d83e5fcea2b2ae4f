"""Click tracking and the client-held attribution token.

A click creates a ``clicked`` referral and hands back a signed JWT
(``ref`` = affiliate code, ``rid`` = referral id) that the browser keeps in an
httpOnly cookie for AFFILIATE_COOKIE_DAYS. At signup the token is resolved
back to the referral; a missing, tampered or expired token simply means
"no attribution".
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from sqlalchemy.orm import Session

from core.config import (
    AFFILIATE_COOKIE_DAYS,
    AFFILIATE_TOKEN_ISSUER,
    AFFILIATE_TOKEN_SECRET,
    logger,
)
from models.affiliates import AFFILIATE_APPROVED, REFERRAL_CLICKED, Referral
from utils.affiliate_errors import InvalidAffiliateCode
from utils.affiliate_registry import get_affiliate_by_code

_ALGORITHM = "HS256"


def track_click(db: Session, code: str) -> Referral:
    """Record a visit for ``code``; every call creates a new referral."""
    affiliate = get_affiliate_by_code(db, code)
    if not affiliate or affiliate.status != AFFILIATE_APPROVED:
        raise InvalidAffiliateCode()
    referral = Referral(affiliate_id=affiliate.id, status=REFERRAL_CLICKED)
    db.add(referral)
    db.commit()
    db.refresh(referral)
    logger.info(f"[referrals.click] affiliate={affiliate.id} code={affiliate.affiliate_code} referral={referral.id}")
    return referral


def issue_attribution_token(code: str, referral_id: str, now: Optional[datetime] = None) -> str:
    if not AFFILIATE_TOKEN_SECRET:
        raise RuntimeError("AFFILIATE_TOKEN_SECRET (or SECRET_KEY) is not configured")
    issued = now or datetime.now(timezone.utc)
    payload = {
        "ref": code,
        "rid": referral_id,
        "iss": AFFILIATE_TOKEN_ISSUER,
        "iat": issued,
        "exp": issued + timedelta(days=AFFILIATE_COOKIE_DAYS),
    }
    token = jwt.encode(payload, AFFILIATE_TOKEN_SECRET, algorithm=_ALGORITHM)
    return token if isinstance(token, str) else token.decode("utf-8")


def resolve_attribution(token: Optional[str]) -> Optional[dict]:
    """Return ``{"affiliate_code", "referral_id"}`` for a valid token, else None."""
    tok = (token or "").strip()
    if not tok or not AFFILIATE_TOKEN_SECRET:
        return None
    try:
        payload = jwt.decode(
            tok,
            AFFILIATE_TOKEN_SECRET,
            algorithms=[_ALGORITHM],
            issuer=AFFILIATE_TOKEN_ISSUER,
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("[referrals.resolve] token expired")
        return None
    except jwt.PyJWTError as ex:
        logger.info(f"[referrals.resolve] invalid token: {ex}")
        return None

    code = str(payload.get("ref") or "").strip()
    referral_id = str(payload.get("rid") or "").strip()
    if not code or not referral_id:
        return None
    return {"affiliate_code": code, "referral_id": referral_id}
