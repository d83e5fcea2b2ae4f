from typing import Optional

from fastapi import APIRouter, Request, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.auth import get_uid_from_request, get_user_email_from_uid
from core.config import (
    AFFILIATE_AUTO_APPROVE,
    AFFILIATE_COMMISSION_RATE,
    AFFILIATE_COOKIE_DAYS,
    AFFILIATE_COOKIE_NAME,
    AFFILIATE_CURRENCY,
    AFFILIATE_MINIMUM_PAYOUT,
    AFFILIATE_MINIMUM_PAYOUT_CENTS,
    APP_NAME,
    APP_URL,
    DEBUG,
    logger,
)
from core.database import get_db
from models.affiliates import AFFILIATE_APPROVED, AFFILIATE_PENDING, Referral, cents_to_dollars
from models.user import User
from utils.affiliate_errors import AffiliateError, AffiliateNotFound, NotApproved
from utils.affiliate_registry import (
    create_affiliate,
    get_affiliate_by_user,
    get_or_create_user,
    get_or_create_user_for_email,
    referral_link,
)
from utils.affiliate_stats import get_affiliate_stats, get_leaderboard
from utils.commission_ledger import list_commissions
from utils.emailing import send_affiliate_email
from utils.payouts import available_balance_cents, list_payouts, request_payout
from utils.rate_limit import check_register_rate_limit, check_track_rate_limit
from utils.referral_binding import attribute_signup
from utils.referral_tracking import issue_attribution_token, resolve_attribution, track_click

router = APIRouter(prefix="/api/affiliates", tags=["affiliates"])


def _error(ex: AffiliateError) -> JSONResponse:
    return JSONResponse(ex.to_dict(), status_code=ex.status_code)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "?"


def _str(payload: dict, *keys: str) -> str:
    for key in keys:
        val = payload.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return ""


def _social_handle(payload: dict) -> Optional[str]:
    handle = _str(payload, "socialHandle", "social_handle")
    if handle:
        return handle
    parts = []
    tiktok = _str(payload, "tiktokHandle")
    instagram = _str(payload, "instagramHandle")
    if tiktok:
        parts.append(f"TikTok: {tiktok}")
    if instagram:
        parts.append(f"Instagram: {instagram}")
    return ", ".join(parts) or None


def _profile_from_payload(payload: dict, email: str) -> dict:
    return {
        "email": email,
        "first_name": _str(payload, "firstName", "first_name"),
        "last_name": _str(payload, "lastName", "last_name"),
        "social_handle": _social_handle(payload),
        "has_social_following": bool(
            payload.get("hasSocialFollowing")
            or payload.get("hasTikTokFollowing")
            or payload.get("hasInstagramFollowing")
        ),
        "payout_email": _str(payload, "payoutEmail", "paypalEmail") or email,
    }


def _send_welcome(affiliate) -> bool:
    link = referral_link(affiliate.affiliate_code)
    if affiliate.status == AFFILIATE_APPROVED:
        title = "You're in!"
        intro = (
            f"Welcome to the <b>{APP_NAME}</b> affiliate program.<br><br>"
            f"Your referral link:<br><a href=\"{link}\">{link}</a><br><br>"
            f"You earn {int(AFFILIATE_COMMISSION_RATE * 100)}% of every payment from the people you refer."
        )
        text = (
            f"Welcome to the {APP_NAME} affiliate program.\n\n"
            f"Your referral link:\n{link}\n\n"
            f"You earn {int(AFFILIATE_COMMISSION_RATE * 100)}% of every payment from the people you refer."
        )
    else:
        title = "Application received"
        intro = f"Thanks for applying to the <b>{APP_NAME}</b> affiliate program. We'll review your application shortly."
        text = f"Thanks for applying to the {APP_NAME} affiliate program. We'll review your application shortly."
    return send_affiliate_email(
        affiliate.email,
        f"{APP_NAME} Affiliates: {title}",
        title,
        intro,
        text,
        button_label="Open Affiliate Dashboard",
        button_url=f"{APP_URL}/affiliate/dashboard",
    )


@router.get("/policy")
async def affiliates_policy():
    """Public affiliate policy so frontend/backoffice can read canonical values."""
    return {
        "commission_rate": str(AFFILIATE_COMMISSION_RATE),
        "commission_percent": float(AFFILIATE_COMMISSION_RATE * 100),
        "min_payout": float(AFFILIATE_MINIMUM_PAYOUT),
        "min_payout_cents": AFFILIATE_MINIMUM_PAYOUT_CENTS,
        "currency": AFFILIATE_CURRENCY,
        "cookie_days": AFFILIATE_COOKIE_DAYS,
        "auto_approve": AFFILIATE_AUTO_APPROVE,
    }


@router.post("/register")
async def affiliates_register(request: Request, payload: dict = Body(...), db: Session = Depends(get_db)):
    """Public sign-up: creates the account if needed and an approved affiliate."""
    client_ip = _client_ip(request)
    allowed, msg = check_register_rate_limit(client_ip)
    if not allowed:
        logger.warning(f"[affiliates.register] rate-limited ip={client_ip}")
        return JSONResponse({"error": msg}, status_code=429)

    email = _str(payload, "email").lower()
    first_name = _str(payload, "firstName", "first_name")
    last_name = _str(payload, "lastName", "last_name")
    if not email or "@" not in email or not first_name or not last_name:
        return JSONResponse({"error": "Email, first name, and last name are required"}, status_code=400)

    try:
        uid = get_uid_from_request(request)
        display_name = f"{first_name} {last_name}"
        if uid:
            user = get_or_create_user(db, uid, email, display_name)
        else:
            user = get_or_create_user_for_email(db, email, display_name)
        affiliate = create_affiliate(db, user.uid, _profile_from_payload(payload, email), status=AFFILIATE_APPROVED)
    except AffiliateError as ex:
        logger.info(f"[affiliates.register] rejected email={email}: {ex.code}")
        return _error(ex)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[affiliates.register] error: {ex}")
        return JSONResponse({"error": "Failed to create affiliate account"}, status_code=500)

    email_sent = _send_welcome(affiliate)
    if not email_sent:
        logger.warning(f"[affiliates.register] welcome-email-not-sent affiliate={affiliate.id}")
    logger.info(f"[affiliates.register] success affiliate={affiliate.id} code={affiliate.affiliate_code}")
    return {
        "success": True,
        "affiliate": {
            "id": affiliate.id,
            "affiliateCode": affiliate.affiliate_code,
            "status": affiliate.status,
        },
        "referralLink": referral_link(affiliate.affiliate_code),
        "emailSent": bool(email_sent),
    }


@router.post("/apply")
async def affiliates_apply(request: Request, payload: dict = Body(...), db: Session = Depends(get_db)):
    """Signed-in users apply; the application waits for operator approval."""
    uid = get_uid_from_request(request)
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    try:
        user = db.get(User, uid)
        email = (user.email if user else "") or get_user_email_from_uid(uid) or _str(payload, "email").lower()
        if not email:
            return JSONResponse({"error": "An email address is required"}, status_code=400)
        if not user:
            user = get_or_create_user(db, uid, email)
        affiliate = create_affiliate(db, user.uid, _profile_from_payload(payload, email), status=AFFILIATE_PENDING)
    except AffiliateError as ex:
        return _error(ex)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[affiliates.apply] error uid={uid}: {ex}")
        return JSONResponse({"error": "Failed to submit application"}, status_code=500)

    _send_welcome(affiliate)
    logger.info(f"[affiliates.apply] uid={uid} affiliate={affiliate.id} status={affiliate.status}")
    return {"success": True, "affiliate": affiliate.to_dict()}


@router.get("/me")
async def affiliates_me(request: Request, db: Session = Depends(get_db)):
    uid = get_uid_from_request(request)
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    affiliate = get_affiliate_by_user(db, uid)
    if not affiliate:
        return _error(AffiliateNotFound())
    return {
        "success": True,
        "affiliate": affiliate.to_dict(),
        "referralLink": referral_link(affiliate.affiliate_code) if affiliate.status == AFFILIATE_APPROVED else None,
    }


@router.get("/link")
async def affiliates_link(request: Request, db: Session = Depends(get_db)):
    uid = get_uid_from_request(request)
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    affiliate = get_affiliate_by_user(db, uid)
    if not affiliate:
        return _error(AffiliateNotFound())
    if affiliate.status != AFFILIATE_APPROVED:
        return _error(NotApproved())
    return {
        "affiliateCode": affiliate.affiliate_code,
        "referralLink": referral_link(affiliate.affiliate_code),
    }


@router.post("/track")
async def affiliates_track(request: Request, payload: dict = Body(...), db: Session = Depends(get_db)):
    """Record a referral click and hand the visitor an attribution cookie. Public endpoint."""
    code = _str(payload, "affiliateCode", "ref", "code")
    if not code:
        return JSONResponse({"error": "Affiliate code required"}, status_code=400)

    client_ip = _client_ip(request)
    allowed, msg = check_track_rate_limit(client_ip)
    if not allowed:
        logger.warning(f"[affiliates.track] rate-limited ip={client_ip}")
        return JSONResponse({"error": msg}, status_code=429)

    try:
        referral = track_click(db, code)
        token = issue_attribution_token(referral.affiliate.affiliate_code, referral.id)
    except AffiliateError as ex:
        logger.info(f"[affiliates.track] rejected code={code} ip={client_ip}")
        return _error(ex)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[affiliates.track] error code={code}: {ex}")
        return {"success": False, "tracked": False}

    response = JSONResponse({"success": True, "tracked": True, "message": "Referral tracked"})
    response.set_cookie(
        AFFILIATE_COOKIE_NAME,
        token,
        max_age=AFFILIATE_COOKIE_DAYS * 24 * 60 * 60,
        path="/",
        httponly=True,
        secure=not DEBUG,
        samesite="lax",
    )
    return response


@router.get("/track")
async def affiliates_track_status(request: Request):
    """Tell the frontend whether this browser carries a live attribution."""
    attribution = resolve_attribution(request.cookies.get(AFFILIATE_COOKIE_NAME))
    return {
        "hasReferral": bool(attribution),
        "affiliateCode": attribution["affiliate_code"] if attribution else None,
        "referralId": attribution["referral_id"] if attribution else None,
    }


@router.post("/track/signup")
async def affiliates_track_signup(request: Request, payload: Optional[dict] = Body(None), db: Session = Depends(get_db)):
    """Bind the attribution cookie to the freshly signed-up user."""
    uid = get_uid_from_request(request)
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    payload = payload or {}
    token = request.cookies.get(AFFILIATE_COOKIE_NAME) or _str(payload, "token")
    if not token:
        return {"ok": True, "tracked": False, "reason": "no_attribution"}

    try:
        if not db.get(User, uid):
            email = get_user_email_from_uid(uid) or _str(payload, "email").lower()
            if not email:
                logger.info(f"[affiliates.track.signup] unknown user uid={uid}")
                return {"ok": True, "tracked": False, "reason": "unknown_user"}
            get_or_create_user(db, uid, email)
        result = attribute_signup(db, token, uid)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[affiliates.track.signup] error uid={uid}: {ex}")
        return {"ok": True, "tracked": False, "reason": "error"}

    logger.info(f"[affiliates.track.signup] uid={uid} result={result}")
    response = JSONResponse({"ok": True, **result})
    if result.get("tracked") or result.get("reason") == "already_attributed":
        response.delete_cookie(AFFILIATE_COOKIE_NAME, path="/")
    return response


@router.get("/stats")
async def affiliates_stats(request: Request, db: Session = Depends(get_db)):
    uid = get_uid_from_request(request)
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    affiliate = get_affiliate_by_user(db, uid)
    if not affiliate:
        return _error(AffiliateNotFound())

    if affiliate.status != AFFILIATE_APPROVED:
        return {
            "success": True,
            "status": affiliate.status,
            "message": "Your application is pending review" if affiliate.status == AFFILIATE_PENDING else "Your affiliate account is suspended",
        }

    try:
        stats = get_affiliate_stats(db, affiliate)
        recent_referrals = (
            db.query(Referral)
            .filter(Referral.affiliate_id == affiliate.id)
            .order_by(Referral.clicked_at.desc())
            .limit(10)
            .all()
        )
        return {
            "success": True,
            "status": affiliate.status,
            "affiliateCode": affiliate.affiliate_code,
            "referralLink": referral_link(affiliate.affiliate_code),
            "commissionRate": float(AFFILIATE_COMMISSION_RATE * 100),
            "minimumPayout": float(AFFILIATE_MINIMUM_PAYOUT),
            "payoutEmail": affiliate.payout_email,
            "stats": stats,
            "recentReferrals": [r.to_dict() for r in recent_referrals],
            "recentCommissions": [c.to_dict() for c in list_commissions(db, affiliate.id, limit=10)],
            "payouts": [p.to_dict() for p in list_payouts(db, affiliate_id=affiliate.id)],
        }
    except Exception as ex:
        logger.exception(f"[affiliates.stats] error affiliate={affiliate.id}: {ex}")
        return JSONResponse({"error": "Failed to fetch stats"}, status_code=500)


@router.get("/payouts")
async def affiliates_payouts(request: Request, db: Session = Depends(get_db)):
    uid = get_uid_from_request(request)
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    affiliate = get_affiliate_by_user(db, uid)
    if not affiliate:
        return _error(AffiliateNotFound())

    available = available_balance_cents(db, affiliate)
    return {
        "success": True,
        "payouts": [p.to_dict() for p in list_payouts(db, affiliate_id=affiliate.id)],
        "pendingEarnings": cents_to_dollars(affiliate.pending_earnings_cents),
        "availableBalance": cents_to_dollars(available),
        "minimumPayout": float(AFFILIATE_MINIMUM_PAYOUT),
        "canRequestPayout": affiliate.status == AFFILIATE_APPROVED and available >= AFFILIATE_MINIMUM_PAYOUT_CENTS,
    }


@router.post("/payouts")
async def affiliates_request_payout(request: Request, payload: Optional[dict] = Body(None), db: Session = Depends(get_db)):
    uid = get_uid_from_request(request)
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    affiliate = get_affiliate_by_user(db, uid)
    if not affiliate:
        return _error(AffiliateNotFound())

    payload = payload or {}
    amount = payload.get("amount")
    destination = _str(payload, "payoutEmail", "paypalEmail") or None
    try:
        payout = request_payout(db, affiliate.id, amount=amount if amount not in (None, "") else None, destination=destination)
    except AffiliateError as ex:
        logger.info(f"[affiliates.payouts] rejected affiliate={affiliate.id}: {ex.code}")
        return _error(ex)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[affiliates.payouts] error affiliate={affiliate.id}: {ex}")
        return JSONResponse({"error": "Failed to request payout"}, status_code=500)

    amount_str = f"${cents_to_dollars(payout.amount_cents):.2f}"
    send_affiliate_email(
        payout.destination,
        f"{APP_NAME} Affiliates: payout requested",
        "Payout requested",
        f"We received your payout request for <b>{amount_str}</b>. It will be processed within 5-7 business days.",
        f"We received your payout request for {amount_str}. It will be processed within 5-7 business days.",
    )
    return {
        "success": True,
        "payout": payout.to_dict(),
        "message": "Payout requested! We'll process it within 5-7 business days.",
    }


@router.get("/leaderboard")
async def affiliates_leaderboard(db: Session = Depends(get_db)):
    try:
        return {"leaderboard": get_leaderboard(db)}
    except Exception as ex:
        logger.exception(f"[affiliates.leaderboard] error: {ex}")
        return JSONResponse({"error": "Failed to fetch leaderboard"}, status_code=500)
