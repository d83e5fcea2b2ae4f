from sqlalchemy import func
from sqlalchemy.orm import Session

from models.affiliates import (
    AFFILIATE_APPROVED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    REFERRAL_CONVERTED,
    REFERRAL_SIGNED_UP,
    Affiliate,
    Referral,
    cents_to_dollars,
)
from utils.commission_ledger import commission_totals

# Lower bound in dollars for each earnings badge, highest first
EARNINGS_LEVELS = (
    (1000, "diamond"),
    (500, "gold"),
    (100, "silver"),
    (25, "bronze"),
)


def earnings_level(lifetime_cents: int) -> str:
    dollars = int(lifetime_cents or 0) / 100.0
    for threshold, level in EARNINGS_LEVELS:
        if dollars >= threshold:
            return level
    return "starter"


def get_affiliate_stats(db: Session, affiliate: Affiliate) -> dict:
    """Funnel counts, commission sums and balances for the affiliate dashboard."""
    counts = dict(
        db.query(Referral.status, func.count(Referral.id))
        .filter(Referral.affiliate_id == affiliate.id)
        .group_by(Referral.status)
        .all()
    )
    clicks = sum(int(n) for n in counts.values())
    conversions = int(counts.get(REFERRAL_CONVERTED, 0))
    signups = int(counts.get(REFERRAL_SIGNED_UP, 0)) + conversions
    rate = f"{conversions / clicks * 100:.1f}" if clicks > 0 else "0"

    totals = commission_totals(db, affiliate.id)
    return {
        "clicks": clicks,
        "signups": signups,
        "conversions": conversions,
        "conversionRate": rate,
        "commissions": {
            "pending": cents_to_dollars(totals.get(COMMISSION_PENDING, 0)),
            "paid": cents_to_dollars(totals.get(COMMISSION_PAID, 0)),
        },
        "totalEarnings": cents_to_dollars(affiliate.lifetime_earnings_cents),
        "pendingEarnings": cents_to_dollars(affiliate.pending_earnings_cents),
        "paidEarnings": cents_to_dollars(affiliate.paid_earnings_cents),
    }


def get_leaderboard(db: Session, limit: int = 20) -> list[dict]:
    """Top approved affiliates; earnings are shown as badges, never amounts."""
    signups = (
        db.query(Referral.affiliate_id, func.count(Referral.id).label("signups"))
        .filter(Referral.status.in_((REFERRAL_SIGNED_UP, REFERRAL_CONVERTED)))
        .group_by(Referral.affiliate_id)
        .subquery()
    )
    rows = (
        db.query(Affiliate, func.coalesce(signups.c.signups, 0))
        .outerjoin(signups, signups.c.affiliate_id == Affiliate.id)
        .filter(Affiliate.status == AFFILIATE_APPROVED)
        .order_by(Affiliate.lifetime_earnings_cents.desc(), Affiliate.created_at.asc())
        .limit(max(1, min(int(limit or 20), 100)))
        .all()
    )
    board = []
    for rank, (affiliate, signup_count) in enumerate(rows, start=1):
        user = affiliate.user
        board.append({
            "rank": rank,
            "name": affiliate.first_name or (user.display_name if user else None) or "Anonymous",
            "socialHandle": affiliate.social_handle,
            "avatar": user.photo_url if user else None,
            "signups": int(signup_count or 0),
            "earningsLevel": earnings_level(affiliate.lifetime_earnings_cents),
        })
    return board
