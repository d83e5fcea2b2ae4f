import os
import logging
from decimal import Decimal
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass

APP_NAME = os.getenv("APP_NAME", "Progressly")
DEBUG = os.getenv("DEBUG", "").lower() in ("1", "true", "yes")

# Public site used for referral links (<APP_URL>/?ref=<code>)
FRONTEND_ORIGIN = (os.getenv("FRONTEND_ORIGIN", "").split(",")[0].strip() or "https://progressly.so").rstrip("/")
APP_URL = (os.getenv("APP_URL", "") or os.getenv("NEXT_PUBLIC_APP_URL", "") or FRONTEND_ORIGIN).strip().rstrip("/")

# Affiliate program policy
AFFILIATE_COMMISSION_RATE = Decimal(os.getenv("AFFILIATE_COMMISSION_RATE", "0.25"))
AFFILIATE_MINIMUM_PAYOUT = Decimal(os.getenv("AFFILIATE_MINIMUM_PAYOUT", "50"))
AFFILIATE_MINIMUM_PAYOUT_CENTS = int(AFFILIATE_MINIMUM_PAYOUT * 100)
AFFILIATE_COOKIE_DAYS = int(os.getenv("AFFILIATE_COOKIE_DAYS", "30"))
AFFILIATE_COOKIE_NAME = os.getenv("AFFILIATE_COOKIE_NAME", "ref_token").strip() or "ref_token"
AFFILIATE_AUTO_APPROVE = os.getenv("AFFILIATE_AUTO_APPROVE", "true").lower() in ("1", "true", "yes")
AFFILIATE_CURRENCY = os.getenv("AFFILIATE_CURRENCY", "usd").strip().lower() or "usd"

# Attribution tokens are HS256 JWTs; SECRET_KEY is the shared fallback
AFFILIATE_TOKEN_SECRET = (os.getenv("AFFILIATE_TOKEN_SECRET", "") or os.getenv("SECRET_KEY", "")).strip()
AFFILIATE_TOKEN_ISSUER = os.getenv("AFFILIATE_TOKEN_ISSUER", "progressly.affiliates")

MAIL_FROM = os.getenv("MAIL_FROM", "Progressly <no-reply@your-domain.com>")
MAIL_FROM_AFFILIATES = os.getenv("MAIL_FROM_AFFILIATES", "affiliates@progressly.so")
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")

ADMIN_ALLOWLIST_IPS = [ip.strip() for ip in (os.getenv("ADMIN_ALLOWLIST_IPS", "").split(",") if os.getenv("ADMIN_ALLOWLIST_IPS") else []) if ip.strip()]

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("progressly")
