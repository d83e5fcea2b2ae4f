import os
from typing import Optional

from fastapi import APIRouter, Body, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.config import logger, ADMIN_ALLOWLIST_IPS, APP_NAME
from sqlalchemy.orm import Session
from core.database import get_db
from models.affiliates import Affiliate, cents_to_dollars
from utils.affiliate_errors import AffiliateError
from utils.affiliate_registry import set_affiliate_status
from utils.emailing import send_affiliate_email
from utils.payouts import complete_payout, list_payouts, mark_payout_processing, reject_payout

router = APIRouter(prefix="/api/admin", tags=["admin"])  # secure endpoints via ADMIN_SECRET


# --- Security helpers ---

def _get_admin_secret() -> str:
    return (os.getenv("ADMIN_SECRET") or "").strip()


def _extract_secret(request: Request, explicit: Optional[str] = None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    # Header takes precedence if provided
    h = request.headers.get("X-Admin-Secret", "").strip()
    if h:
        return h
    # Query fallback
    return request.query_params.get("secret", "").strip()


def _require_admin(request: Request, secret: Optional[str] = None) -> Optional[JSONResponse]:
    configured = _get_admin_secret()
    if not configured:
        return JSONResponse({"error": "admin_not_configured"}, status_code=503)
    provided = _extract_secret(request, secret)
    if not provided or provided != configured:
        return JSONResponse({"error": "unauthorized"}, status_code=401)
    if ADMIN_ALLOWLIST_IPS:
        ip = request.client.host if request.client else ""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        if ip and ip not in ADMIN_ALLOWLIST_IPS:
            return JSONResponse({"error": "forbidden"}, status_code=403)
    return None


# --- Models ---

class AffiliateStatusPayload(BaseModel):
    status: str


class PayoutActionPayload(BaseModel):
    action: str
    notes: Optional[str] = None


_PAYOUT_ACTIONS = {
    "processing": mark_payout_processing,
    "complete": complete_payout,
    "reject": reject_payout,
}


# --- Affiliates ---

@router.get("/affiliates")
async def admin_list_affiliates(request: Request, status: Optional[str] = None, limit: int = 100, db: Session = Depends(get_db)):
    guard = _require_admin(request)
    if guard:
        return guard
    q = db.query(Affiliate)
    if status:
        q = q.filter(Affiliate.status == status)
    rows = q.order_by(Affiliate.created_at.desc()).limit(max(1, min(limit, 500))).all()
    return {"affiliates": [a.to_dict() for a in rows], "count": len(rows)}


@router.post("/affiliates/{affiliate_id}/status")
async def admin_set_affiliate_status(affiliate_id: str, request: Request, payload: AffiliateStatusPayload = Body(...), db: Session = Depends(get_db)):
    guard = _require_admin(request)
    if guard:
        return guard
    try:
        affiliate = set_affiliate_status(db, affiliate_id, payload.status.strip().lower())
    except AffiliateError as ex:
        return JSONResponse(ex.to_dict(), status_code=ex.status_code)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[admin.affiliates] status update failed id={affiliate_id}: {ex}")
        return JSONResponse({"error": "server error"}, status_code=500)
    logger.info(f"[admin.affiliates] id={affiliate_id} status={affiliate.status}")
    return {"ok": True, "affiliate": affiliate.to_dict()}


# --- Payouts ---

@router.get("/payouts")
async def admin_list_payouts(request: Request, status: Optional[str] = None, affiliate_id: Optional[str] = None, db: Session = Depends(get_db)):
    guard = _require_admin(request)
    if guard:
        return guard
    payouts = list_payouts(db, affiliate_id=affiliate_id, status=status, limit=500)
    return {
        "payouts": [dict(p.to_dict(), affiliateId=p.affiliate_id) for p in payouts],
        "count": len(payouts),
    }


@router.patch("/payouts/{payout_id}")
async def admin_process_payout(payout_id: str, request: Request, payload: PayoutActionPayload = Body(...), db: Session = Depends(get_db)):
    guard = _require_admin(request)
    if guard:
        return guard
    action = (payload.action or "").strip().lower()
    handler = _PAYOUT_ACTIONS.get(action)
    if not handler:
        return JSONResponse({"error": "Invalid action"}, status_code=400)

    try:
        payout = handler(db, payout_id, notes=payload.notes)
    except AffiliateError as ex:
        logger.info(f"[admin.payouts] {action} rejected payout={payout_id}: {ex.code}")
        return JSONResponse(ex.to_dict(), status_code=ex.status_code)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[admin.payouts] {action} failed payout={payout_id}: {ex}")
        return JSONResponse({"error": "Failed to process payout"}, status_code=500)

    if action == "complete":
        amount_str = f"${cents_to_dollars(payout.amount_cents):.2f}"
        send_affiliate_email(
            payout.destination,
            f"{APP_NAME} Affiliates: payout sent",
            "Payout sent",
            f"Your payout of <b>{amount_str}</b> has been sent to {payout.destination}.",
            f"Your payout of {amount_str} has been sent to {payout.destination}.",
        )
    logger.info(f"[admin.payouts] {action} payout={payout_id} status={payout.status}")
    return {"success": True, "payout": payout.to_dict()}
