import re
from decimal import Decimal

import pytest

from models.affiliates import AFFILIATE_APPROVED, AFFILIATE_PENDING, AFFILIATE_SUSPENDED, Affiliate
from utils.affiliate_errors import AffiliateNotFound, DuplicateAffiliate, InsufficientFunds, InvalidAmount
from utils.affiliate_registry import (
    BUCKET_PAID,
    BUCKET_PENDING,
    adjust_balance,
    create_affiliate,
    dollars_to_cents,
    get_affiliate_by_code,
    get_affiliate_by_user,
    get_or_create_user,
    get_or_create_user_for_email,
    referral_link,
    set_affiliate_status,
)


def _assert_balanced(affiliate):
    assert affiliate.pending_earnings_cents + affiliate.paid_earnings_cents == affiliate.lifetime_earnings_cents


def test_create_affiliate_generates_code_and_auto_approves(db):
    get_or_create_user(db, "u1", "Owner@Example.com")
    affiliate = create_affiliate(db, "u1", {"email": "Owner@Example.com", "first_name": " Ada "})

    assert re.fullmatch(r"[0-9A-F]{8}", affiliate.affiliate_code)
    assert affiliate.status == AFFILIATE_APPROVED
    assert affiliate.email == "owner@example.com"
    assert affiliate.payout_email == "owner@example.com"
    assert affiliate.first_name == "Ada"
    assert affiliate.lifetime_earnings_cents == 0
    _assert_balanced(affiliate)


def test_create_affiliate_with_explicit_pending_status(db):
    get_or_create_user(db, "u1", "a@example.com")
    affiliate = create_affiliate(db, "u1", {"email": "a@example.com"}, status=AFFILIATE_PENDING)
    assert affiliate.status == AFFILIATE_PENDING


def test_duplicate_affiliate_for_same_user(db, make_affiliate):
    affiliate = make_affiliate(uid="u1", email="first@example.com")
    with pytest.raises(DuplicateAffiliate):
        create_affiliate(db, affiliate.user_uid, {"email": "other@example.com"})


def test_duplicate_affiliate_for_same_email_ignores_case(db, make_affiliate):
    make_affiliate(uid="u1", email="taken@example.com")
    get_or_create_user(db, "u2", "u2@example.com")
    with pytest.raises(DuplicateAffiliate):
        create_affiliate(db, "u2", {"email": "TAKEN@example.com"})
    assert db.query(Affiliate).count() == 1


def test_lookups_return_none_when_absent(db, make_affiliate):
    affiliate = make_affiliate()
    assert get_affiliate_by_code(db, affiliate.affiliate_code.lower()).id == affiliate.id
    assert get_affiliate_by_code(db, "ZZZZ9999") is None
    assert get_affiliate_by_code(db, "not a code!") is None
    assert get_affiliate_by_code(db, None) is None
    assert get_affiliate_by_user(db, affiliate.user_uid).id == affiliate.id
    assert get_affiliate_by_user(db, "nobody") is None


def test_get_or_create_user_for_email_reuses_account(db):
    user = get_or_create_user(db, "u1", "known@example.com")
    assert get_or_create_user_for_email(db, "Known@Example.com").uid == user.uid

    fresh = get_or_create_user_for_email(db, "new@example.com", "New Person")
    assert fresh.uid.startswith("aff_")
    assert fresh.display_name == "New Person"


def test_adjust_balance_pending_then_paid(db, make_affiliate):
    affiliate = make_affiliate()

    adjust_balance(db, affiliate.id, 2500, BUCKET_PENDING)
    db.commit()
    assert affiliate.pending_earnings_cents == 2500
    assert affiliate.lifetime_earnings_cents == 2500
    _assert_balanced(affiliate)

    adjust_balance(db, affiliate.id, 1000, BUCKET_PAID)
    db.commit()
    assert affiliate.pending_earnings_cents == 1500
    assert affiliate.paid_earnings_cents == 1000
    assert affiliate.lifetime_earnings_cents == 2500
    _assert_balanced(affiliate)


def test_adjust_balance_paid_requires_pending_funds(db, make_affiliate):
    affiliate = make_affiliate()
    adjust_balance(db, affiliate.id, 500, BUCKET_PENDING)
    db.commit()

    with pytest.raises(InsufficientFunds):
        adjust_balance(db, affiliate.id, 501, BUCKET_PAID)
    db.rollback()

    db.refresh(affiliate)
    assert affiliate.pending_earnings_cents == 500
    assert affiliate.paid_earnings_cents == 0
    _assert_balanced(affiliate)


def test_adjust_balance_rejects_bad_input(db, make_affiliate):
    affiliate = make_affiliate()
    with pytest.raises(InvalidAmount):
        adjust_balance(db, affiliate.id, 0, BUCKET_PENDING)
    with pytest.raises(AffiliateNotFound):
        adjust_balance(db, "missing", 100, BUCKET_PENDING)
    with pytest.raises(ValueError):
        adjust_balance(db, affiliate.id, 100, "lifetime")


def test_set_affiliate_status(db, make_affiliate):
    affiliate = make_affiliate()
    assert set_affiliate_status(db, affiliate.id, AFFILIATE_SUSPENDED).status == AFFILIATE_SUSPENDED
    with pytest.raises(AffiliateNotFound):
        set_affiliate_status(db, "missing", AFFILIATE_APPROVED)


def test_dollars_to_cents():
    assert dollars_to_cents("55") == 5500
    assert dollars_to_cents(Decimal("12.34")) == 1234
    assert dollars_to_cents("0.125", strict=False) == 12
    assert dollars_to_cents("0.135", strict=False) == 14
    with pytest.raises(InvalidAmount):
        dollars_to_cents("12.345")
    with pytest.raises(InvalidAmount):
        dollars_to_cents("abc")
    with pytest.raises(InvalidAmount):
        dollars_to_cents("NaN")


def test_referral_link():
    assert referral_link("ABC123") == "https://progressly.test/?ref=ABC123"


@pytest.mark.parametrize("amount", ["1e30", "1e300", 10**40, "30000000"])
def test_dollars_to_cents_rejects_out_of_range(amount):
    with pytest.raises(InvalidAmount):
        dollars_to_cents(amount, strict=False)
