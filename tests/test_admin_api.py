from decimal import Decimal

import pytest

from models.affiliates import AFFILIATE_APPROVED, AFFILIATE_PENDING, AFFILIATE_SUSPENDED, Affiliate
from utils.commission_ledger import record_commission
from utils.payouts import request_payout

ADMIN = {"X-Admin-Secret": "test-admin-secret"}


@pytest.fixture
def open_payout(db, make_affiliate, referred_customer):
    affiliate = make_affiliate()
    referred_customer(affiliate, "buyer")
    record_commission(db, "buyer", Decimal("200"), "pay_1")
    return request_payout(db, affiliate.id)


def test_admin_requires_secret(client):
    assert client.get("/api/admin/affiliates").status_code == 401
    assert client.get("/api/admin/affiliates", headers={"X-Admin-Secret": "wrong"}).status_code == 401
    assert client.get("/api/admin/affiliates?secret=test-admin-secret").status_code == 200


def test_admin_unconfigured(client, monkeypatch):
    monkeypatch.delenv("ADMIN_SECRET", raising=False)
    assert client.get("/api/admin/payouts", headers=ADMIN).status_code == 503


def test_list_affiliates_filters_by_status(client, make_affiliate):
    make_affiliate()
    make_affiliate(status=AFFILIATE_PENDING)

    everyone = client.get("/api/admin/affiliates", headers=ADMIN).json()
    waiting = client.get("/api/admin/affiliates", params={"status": "pending"}, headers=ADMIN).json()

    assert everyone["count"] == 2
    assert waiting["count"] == 1
    assert waiting["affiliates"][0]["status"] == AFFILIATE_PENDING


def test_approve_and_suspend(client, db, make_affiliate):
    affiliate = make_affiliate(status=AFFILIATE_PENDING)
    url = f"/api/admin/affiliates/{affiliate.id}/status"

    approved = client.post(url, json={"status": "Approved"}, headers=ADMIN)
    assert approved.status_code == 200
    assert approved.json()["affiliate"]["status"] == AFFILIATE_APPROVED

    client.post(url, json={"status": "suspended"}, headers=ADMIN)
    db.expire_all()
    assert db.get(Affiliate, affiliate.id).status == AFFILIATE_SUSPENDED

    assert client.post(url, json={"status": "banished"}, headers=ADMIN).status_code == 400
    assert client.post("/api/admin/affiliates/missing/status", json={"status": "approved"}, headers=ADMIN).status_code == 404


def test_list_payouts(client, open_payout):
    body = client.get("/api/admin/payouts", params={"status": "requested"}, headers=ADMIN).json()
    assert body["count"] == 1
    assert body["payouts"][0]["id"] == open_payout.id
    assert body["payouts"][0]["affiliateId"] == open_payout.affiliate_id


def test_complete_payout(client, db, open_payout):
    url = f"/api/admin/payouts/{open_payout.id}"

    resp = client.patch(url, json={"action": "complete", "notes": "PayPal batch 7"}, headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["payout"]["status"] == "paid"
    db.expire_all()
    affiliate = db.get(Affiliate, open_payout.affiliate_id)
    assert (affiliate.pending_earnings_cents, affiliate.paid_earnings_cents) == (0, 5000)

    again = client.patch(url, json={"action": "complete"}, headers=ADMIN)
    assert again.status_code == 200
    db.expire_all()
    assert db.get(Affiliate, open_payout.affiliate_id).paid_earnings_cents == 5000

    rejected = client.patch(url, json={"action": "reject"}, headers=ADMIN)
    assert rejected.status_code == 409
    assert rejected.json()["code"] == "invalid_transition"


def test_processing_and_reject(client, open_payout):
    url = f"/api/admin/payouts/{open_payout.id}"
    assert client.patch(url, json={"action": "processing"}, headers=ADMIN).json()["payout"]["status"] == "processing"
    assert client.patch(url, json={"action": "reject", "notes": "fraud"}, headers=ADMIN).json()["payout"]["status"] == "rejected"


def test_payout_action_errors(client, open_payout):
    bad = client.patch(f"/api/admin/payouts/{open_payout.id}", json={"action": "refund"}, headers=ADMIN)
    assert bad.status_code == 400
    missing = client.patch("/api/admin/payouts/missing", json={"action": "complete"}, headers=ADMIN)
    assert missing.status_code == 404
    assert missing.json()["code"] == "payout_not_found"
