from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql

from models.affiliates import (
    AFFILIATE_PENDING,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    PAYOUT_PAID,
    PAYOUT_PROCESSING,
    PAYOUT_REJECTED,
    PAYOUT_REQUESTED,
    Affiliate,
    Commission,
    Payout,
)
from utils.affiliate_errors import (
    AffiliateNotFound,
    BelowMinimum,
    InsufficientFunds,
    InvalidAmount,
    InvalidPayoutDestination,
    InvalidTransition,
    NotApproved,
    PayoutNotFound,
)
from utils.commission_ledger import record_commission
from utils.payouts import (
    available_balance_cents,
    complete_payout,
    locked_affiliate_query,
    mark_payout_processing,
    reject_payout,
    request_payout,
)


@pytest.fixture
def earning_affiliate(db, make_affiliate, referred_customer):
    """Approved affiliate whose referred customer pays on demand."""
    affiliate = make_affiliate()
    referred_customer(affiliate, "customer")
    keys = iter(range(1, 1000))

    def _earn(gross):
        record_commission(db, "customer", Decimal(gross), f"pay_{next(keys)}")
        db.expire_all()
        return db.get(Affiliate, affiliate.id)

    return affiliate, _earn


def test_payout_waits_for_minimum_then_succeeds(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("160")  # 40.00 pending
    with pytest.raises(BelowMinimum):
        request_payout(db, affiliate.id)
    assert db.query(Payout).count() == 0

    earn("60")  # +15.00
    payout = request_payout(db, affiliate.id)

    assert payout.amount_cents == 5500
    assert payout.status == PAYOUT_REQUESTED
    assert payout.destination == affiliate.email
    db.expire_all()
    refreshed = db.get(Affiliate, affiliate.id)
    # Requesting moves no money
    assert refreshed.pending_earnings_cents == 5500
    assert refreshed.paid_earnings_cents == 0


def test_payout_above_pending_fails_without_row(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("240")  # 60.00

    with pytest.raises(InsufficientFunds):
        request_payout(db, affiliate.id, amount="60.01")
    with pytest.raises(BelowMinimum):
        request_payout(db, affiliate.id, amount="100")
    with pytest.raises(BelowMinimum):
        request_payout(db, affiliate.id, amount="49.99")
    assert db.query(Payout).count() == 0


def test_open_requests_hold_their_funds(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("480")  # 120.00

    request_payout(db, affiliate.id, amount="70")
    assert available_balance_cents(db, db.get(Affiliate, affiliate.id)) == 5000
    with pytest.raises(InsufficientFunds):
        request_payout(db, affiliate.id, amount="60")
    assert request_payout(db, affiliate.id).amount_cents == 5000


@pytest.mark.parametrize("amount", ["-5", "12.345", "lots", "1e30", "1e300"])
def test_malformed_amounts(db, earning_affiliate, amount):
    affiliate, earn = earning_affiliate
    earn("400")
    with pytest.raises(InvalidAmount):
        request_payout(db, affiliate.id, amount=amount)
    assert db.query(Payout).count() == 0


@pytest.mark.parametrize("amount", ["0", "0.00", 0])
def test_zero_amount_is_below_minimum(db, earning_affiliate, amount):
    affiliate, earn = earning_affiliate
    earn("400")
    with pytest.raises(BelowMinimum):
        request_payout(db, affiliate.id, amount=amount)


def test_request_locks_the_affiliate_row(db):
    sql = str(locked_affiliate_query(db, "aff_1").statement.compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in sql


def test_request_requires_approved_affiliate(db, make_affiliate):
    pending = make_affiliate(status=AFFILIATE_PENDING)
    with pytest.raises(NotApproved):
        request_payout(db, pending.id)
    with pytest.raises(AffiliateNotFound):
        request_payout(db, "missing")


def test_new_destination_is_remembered(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("400")

    payout = request_payout(db, affiliate.id, amount="50", destination="PayPal@Example.com")

    assert payout.destination == "paypal@example.com"
    db.expire_all()
    assert db.get(Affiliate, affiliate.id).payout_email == "paypal@example.com"


def test_invalid_destination(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("400")
    with pytest.raises(InvalidPayoutDestination):
        request_payout(db, affiliate.id, destination="not-an-email")

    a = db.get(Affiliate, affiliate.id)
    a.payout_email = None
    db.commit()
    with pytest.raises(InvalidPayoutDestination):
        request_payout(db, affiliate.id)


def test_complete_moves_pending_to_paid_and_settles_commissions(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("120")  # 30.00
    earn("120")  # 30.00
    earn("40")   # 10.00
    payout = request_payout(db, affiliate.id, amount="60")

    done = complete_payout(db, payout.id, notes="sent via PayPal")

    assert done.status == PAYOUT_PAID
    assert done.processed_at is not None
    assert done.notes == "sent via PayPal"
    db.expire_all()
    a = db.get(Affiliate, affiliate.id)
    assert (a.pending_earnings_cents, a.paid_earnings_cents, a.lifetime_earnings_cents) == (1000, 6000, 7000)
    statuses = [c.status for c in db.query(Commission).order_by(Commission.id).all()]
    assert statuses == [COMMISSION_PAID, COMMISSION_PAID, COMMISSION_PENDING]
    assert db.query(Commission).filter(Commission.payout_id == payout.id).count() == 2


def test_complete_is_idempotent(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("200")
    payout = request_payout(db, affiliate.id)

    complete_payout(db, payout.id)
    complete_payout(db, payout.id)

    db.expire_all()
    a = db.get(Affiliate, affiliate.id)
    assert (a.pending_earnings_cents, a.paid_earnings_cents) == (0, 5000)


def test_processing_then_complete(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("200")
    payout = request_payout(db, affiliate.id)

    assert mark_payout_processing(db, payout.id).status == PAYOUT_PROCESSING
    assert mark_payout_processing(db, payout.id).status == PAYOUT_PROCESSING
    assert complete_payout(db, payout.id).status == PAYOUT_PAID
    with pytest.raises(InvalidTransition):
        mark_payout_processing(db, payout.id)


def test_reject_releases_funds(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("200")
    payout = request_payout(db, affiliate.id)

    rejected = reject_payout(db, payout.id, notes="duplicate request")

    assert rejected.status == PAYOUT_REJECTED
    assert reject_payout(db, payout.id).status == PAYOUT_REJECTED
    with pytest.raises(InvalidTransition):
        complete_payout(db, payout.id)
    db.expire_all()
    a = db.get(Affiliate, affiliate.id)
    assert a.pending_earnings_cents == 5000
    assert available_balance_cents(db, a) == 5000


def test_paid_payout_cannot_be_rejected(db, earning_affiliate):
    affiliate, earn = earning_affiliate
    earn("200")
    payout = request_payout(db, affiliate.id)
    complete_payout(db, payout.id)
    with pytest.raises(InvalidTransition):
        reject_payout(db, payout.id)


def test_unknown_payout(db):
    with pytest.raises(PayoutNotFound):
        complete_payout(db, "missing")
    with pytest.raises(PayoutNotFound):
        reject_payout(db, "missing")
