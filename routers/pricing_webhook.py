from decimal import Decimal
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from typing import Optional
import os

from core.config import AFFILIATE_CURRENCY, logger
from standardwebhooks import Webhook, WebhookVerificationError
from core.auth import get_uid_by_email
from sqlalchemy.orm import Session
from core.database import get_db
from models.pricing import PricingEvent
from utils.affiliate_errors import AffiliateError, InvalidAmount
from utils.affiliate_registry import dollars_to_cents, get_user_by_email
from utils.commission_ledger import record_commission
from utils.referral_binding import bind_conversion_for_user

router = APIRouter(prefix="/api/pricing", tags=["pricing"])

# Events that mean the customer was actually billed
COMMISSIONABLE_EVENTS = {
    "payment.succeeded",
    "subscription.renewed",
    "checkout.session.completed",
    "invoice.payment_succeeded",
}

_PAYMENT_OBJECT_KINDS = ("payment", "payment_intent", "charge", "invoice")


# Helpers

def _webhook_secret() -> str:
    return (
        os.getenv("PRICING_WEBHOOK_SECRET")
        or os.getenv("DODO_PAYMENTS_WEBHOOK_KEY")
        or os.getenv("DODO_WEBHOOK_SECRET")
        or ""
    ).strip()


def _dict(d) -> dict:
    return d if isinstance(d, dict) else {}


def _first_email_from_payload(payload: dict) -> str:
    paths = (
        ["email"],
        ["customer", "email"],
        ["data", "customer", "email"],
        ["data", "object", "email"],
        ["data", "object", "customer_email"],
        ["data", "object", "customer", "email"],
        ["object", "customer_email"],
        ["object", "email"],
        ["metadata", "email"],
    )
    for path in paths:
        node = payload
        for key in path:
            if isinstance(node, dict) and key in node:
                node = node[key]
            else:
                node = None
                break
        if isinstance(node, str) and "@" in node:
            return node.strip().lower()
    return ""


def _event_object(payload: dict) -> dict:
    """The payment/invoice/session object the event is about."""
    data_node = payload.get("data") if isinstance(payload.get("data"), (dict, list)) else None
    # Common provider shapes: { data: { object: {...} } }
    if isinstance(data_node, dict) and isinstance(data_node.get("object"), dict):
        event_obj = data_node["object"]
    # Some send arrays: { data: [ { object: {...} }, ... ] }
    elif isinstance(data_node, list) and data_node and isinstance(data_node[0], dict) and isinstance(data_node[0].get("object"), dict):
        event_obj = data_node[0]["object"]
    # Fallback: use data node directly when object wrapper is missing
    elif isinstance(data_node, dict):
        event_obj = data_node
    elif isinstance(payload.get("object"), dict):
        event_obj = payload["object"]
    else:
        event_obj = payload
    return _dict(event_obj)


def _payer_uid(db: Session, payload: dict, event_obj: dict) -> Optional[str]:
    meta = _dict(event_obj.get("metadata")) or _dict(_dict(payload.get("data")).get("metadata"))
    for key in ("user_uid", "userId", "uid"):
        val = meta.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()

    email = _first_email_from_payload(payload) or _first_email_from_payload(event_obj)
    if not email:
        return None
    user = get_user_by_email(db, email)
    if user:
        return user.uid
    return get_uid_by_email(email)


def _gross_cents(event_obj: dict) -> Optional[int]:
    """Billed amount in minor units."""
    for key in ("total_amount", "amount_total", "amount_paid", "amount"):
        val = event_obj.get(key)
        if isinstance(val, bool) or val is None:
            continue
        if isinstance(val, int):
            return val
        if isinstance(val, float) and val.is_integer():
            return int(val)
        if isinstance(val, str) and val.strip().lstrip("-").isdigit():
            return int(val.strip())
    return None


def _id_of(val) -> str:
    if isinstance(val, dict):
        val = val.get("id")
    return val.strip() if isinstance(val, str) else ""


def _payment_key(evt_type: str, event_obj: dict) -> str:
    """Provider payment id; webhook delivery ids are never used."""
    for key in ("payment_id", "payment_intent"):
        found = _id_of(event_obj.get(key))
        if found:
            return found
    kind = str(event_obj.get("object") or event_obj.get("payload_type") or "").strip().lower()
    is_payment = kind in _PAYMENT_OBJECT_KINDS if kind else evt_type.startswith(("payment.", "invoice."))
    return _id_of(event_obj.get("id")) if is_payment else ""


@router.post("/webhook")
async def pricing_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Webhook endpoint to receive payment events and credit affiliate commissions.
    Security:
      - If PRICING_WEBHOOK_SECRET or DODO_PAYMENTS_WEBHOOK_KEY starts with whsec_,
        verify using provider's Standard Webhooks signature headers.
      - Otherwise require X-Pricing-Secret header to equal the configured secret.
    """

    logger.info("[pricing.webhook] received webhook")
    payload = None

    # --- Step 1: Verify secret ---
    secret_raw = _webhook_secret()
    if not secret_raw:
        logger.error("[pricing.webhook] no webhook secret configured")
        return JSONResponse({"error": "webhook_not_configured"}, status_code=503)
    try:
        if secret_raw.startswith("whsec_"):
            raw_body = await request.body()
            headers = {
                "webhook-id": request.headers.get("webhook-id") or "",
                "webhook-timestamp": request.headers.get("webhook-timestamp") or "",
                "webhook-signature": request.headers.get("webhook-signature") or "",
            }
            payload = Webhook(secret_raw).verify(data=raw_body, headers=headers)
        else:
            secret_provided = request.headers.get("X-Pricing-Secret") or ""
            if secret_provided != secret_raw:
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
    except WebhookVerificationError as ex:
        logger.warning(f"[pricing.webhook] signature rejected: {ex}")
        return JSONResponse({"error": "invalid signature"}, status_code=401)

    # --- Step 2: Parse JSON payload if not already verified ---
    if payload is None:
        try:
            payload = await request.json()
        except Exception as ex:
            logger.warning(f"[pricing.webhook] invalid JSON: {ex}")
            return JSONResponse({"error": "invalid JSON"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "invalid payload"}, status_code=400)

    # --- Step 3: Event type and object ---
    evt_type = str((payload.get("type") or payload.get("event") or "")).strip().lower()
    event_obj = _event_object(payload)
    uid = _payer_uid(db, payload, event_obj)
    logger.info(f"[pricing.webhook] type={evt_type} uid={uid or '-'}")

    # --- Step 4: Audit every accepted delivery ---
    try:
        db.add(PricingEvent(
            user_uid=uid,
            event_type=evt_type or "unknown",
            event_id=str(payload.get("id") or request.headers.get("webhook-id") or "") or None,
            payload=payload,
        ))
        db.commit()
    except Exception as ex:
        db.rollback()
        logger.exception(f"[pricing.webhook] failed to store event type={evt_type}: {ex}")
        return JSONResponse({"error": "storage error"}, status_code=500)

    if evt_type not in COMMISSIONABLE_EVENTS:
        return {"ok": True, "type": evt_type, "commission": {"tracked": False, "reason": "ignored_event"}}

    # --- Step 5: Referral conversion and commission ---
    try:
        payment_key = _payment_key(evt_type, event_obj)
        if not payment_key:
            logger.warning(f"[pricing.webhook] no payment key type={evt_type} uid={uid or '-'}; commission skipped")
            return {"ok": True, "type": evt_type, "commission": {"tracked": False, "reason": "missing_payment_key"}}
        gross_cents = _gross_cents(event_obj)
        if gross_cents is None:
            logger.warning(f"[pricing.webhook] no amount type={evt_type} key={payment_key}; commission skipped")
            return {"ok": True, "type": evt_type, "commission": {"tracked": False, "reason": "missing_amount"}}
        if gross_cents < 0:
            raise InvalidAmount("Gross amount cannot be negative")
        gross = Decimal(gross_cents) / 100
        dollars_to_cents(gross)
        if gross_cents == 0:
            # Free trials and $0 checkouts do not make the payer a paying customer
            return {"ok": True, "type": evt_type, "commission": {"tracked": False, "reason": "zero_amount"}}

        bind_conversion_for_user(db, uid)
        currency = str(event_obj.get("currency") or AFFILIATE_CURRENCY).strip().lower()
        result = record_commission(db, uid, gross, payment_key, currency=currency)
    except AffiliateError as ex:
        # Malformed payment data; redelivery would not help
        logger.warning(f"[pricing.webhook] commission rejected type={evt_type}: {ex}")
        return {"ok": True, "type": evt_type, "commission": {"tracked": False, "reason": ex.code}}
    except Exception as ex:
        db.rollback()
        logger.exception(f"[pricing.webhook] commission failed type={evt_type} uid={uid or '-'}: {ex}")
        return JSONResponse({"error": "commission processing failed"}, status_code=500)

    logger.info(f"[pricing.webhook] commission type={evt_type} result={result}")
    return {"ok": True, "type": evt_type, "commission": result}
