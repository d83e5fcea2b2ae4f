import itertools
import os

# Configuration is read at import time, so the environment goes first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AFFILIATE_TOKEN_SECRET"] = "test-attribution-secret"
os.environ["AFFILIATE_COMMISSION_RATE"] = "0.25"
os.environ["AFFILIATE_MINIMUM_PAYOUT"] = "50"
os.environ["AFFILIATE_COOKIE_DAYS"] = "30"
os.environ["AFFILIATE_AUTO_APPROVE"] = "true"
os.environ["APP_URL"] = "https://progressly.test"
os.environ["REDIS_URL"] = ""
os.environ["SMTP_HOST"] = ""
for _var in ("FIREBASE_PROJECT_ID", "FIREBASE_SERVICE_ACCOUNT_JSON", "FIREBASE_SERVICE_ACCOUNT_JSON_PATH", "ADMIN_ALLOWLIST_IPS", "DEBUG"):
    os.environ.pop(_var, None)

import pytest
from fastapi.testclient import TestClient

from core.database import Base, SessionLocal, engine
from models import affiliates as _affiliate_models, pricing as _pricing_models, user as _user_models  # noqa: F401
from models.affiliates import AFFILIATE_APPROVED
from utils.affiliate_registry import create_affiliate, get_or_create_user
from utils.referral_binding import bind_conversion, bind_signup
from utils.referral_tracking import track_click

ADMIN_SECRET = "test-admin-secret"
WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_affiliate(db):
    counter = itertools.count(1)

    def _make(status=AFFILIATE_APPROVED, uid=None, email=None, first_name="Ada"):
        n = next(counter)
        uid = uid or f"affiliate-{n}"
        email = email or f"{uid}@example.com"
        get_or_create_user(db, uid, email)
        return create_affiliate(db, uid, {"email": email, "first_name": first_name}, status=status)

    return _make


@pytest.fixture
def referred_customer(db):
    """Walk a customer through click -> signup (-> conversion) for an approved affiliate."""

    def _make(affiliate, uid, convert=True):
        get_or_create_user(db, uid, f"{uid}@example.com")
        referral = track_click(db, affiliate.affiliate_code)
        bind_signup(db, referral.id, uid)
        if convert:
            bind_conversion(db, referral.id)
        return referral

    return _make


@pytest.fixture
def client(monkeypatch):
    import main
    import routers.affiliates
    import routers.pricing_webhook

    # Identity comes from a test header instead of a Firebase ID token
    monkeypatch.setattr(routers.affiliates, "get_uid_from_request", lambda request: request.headers.get("X-Test-Uid") or None)
    monkeypatch.setattr(routers.affiliates, "get_user_email_from_uid", lambda uid: None)
    monkeypatch.setattr(routers.pricing_webhook, "get_uid_by_email", lambda email: None)
    monkeypatch.setattr(routers.affiliates, "check_track_rate_limit", lambda ip: (True, ""))
    monkeypatch.setattr(routers.affiliates, "check_register_rate_limit", lambda ip: (True, ""))
    monkeypatch.setenv("ADMIN_SECRET", ADMIN_SECRET)
    monkeypatch.setenv("PRICING_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.delenv("DODO_PAYMENTS_WEBHOOK_KEY", raising=False)
    monkeypatch.delenv("DODO_WEBHOOK_SECRET", raising=False)
    return TestClient(main.app)
