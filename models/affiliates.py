"""
Affiliate program models for PostgreSQL
- affiliates: one per participant, carries the earnings buckets
- affiliate_referrals: one per tracked visit (click -> signup -> conversion)
- affiliate_commissions: append-only ledger, one row per billed payment
- affiliate_payouts: withdrawal requests
Money is stored in integer cents.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from core.database import Base

AFFILIATE_PENDING = "pending"
AFFILIATE_APPROVED = "approved"
AFFILIATE_SUSPENDED = "suspended"
AFFILIATE_STATUSES = (AFFILIATE_PENDING, AFFILIATE_APPROVED, AFFILIATE_SUSPENDED)

REFERRAL_CLICKED = "clicked"
REFERRAL_SIGNED_UP = "signed_up"
REFERRAL_CONVERTED = "converted"
REFERRAL_STATUSES = (REFERRAL_CLICKED, REFERRAL_SIGNED_UP, REFERRAL_CONVERTED)

COMMISSION_PENDING = "pending"
COMMISSION_PAID = "paid"

PAYOUT_REQUESTED = "requested"
PAYOUT_PROCESSING = "processing"
PAYOUT_PAID = "paid"
PAYOUT_REJECTED = "rejected"
PAYOUT_OPEN_STATUSES = (PAYOUT_REQUESTED, PAYOUT_PROCESSING)


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cents_to_dollars(cents) -> float:
    return round(int(cents or 0) / 100.0, 2)


class Affiliate(Base):
    __tablename__ = "affiliates"
    __table_args__ = (
        CheckConstraint("pending_earnings_cents >= 0", name="ck_affiliates_pending_non_negative"),
        CheckConstraint("paid_earnings_cents >= 0", name="ck_affiliates_paid_non_negative"),
        CheckConstraint(
            "lifetime_earnings_cents = pending_earnings_cents + paid_earnings_cents",
            name="ck_affiliates_lifetime_balance",
        ),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    affiliate_code = Column(String(32), unique=True, index=True, nullable=False)

    # Owning account (one affiliate per user)
    user_uid = Column(String(128), ForeignKey("users.uid", ondelete="CASCADE"), unique=True, index=True, nullable=False)

    # Profile
    email = Column(String(255), unique=True, index=True, nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    social_handle = Column(Text, nullable=True)
    has_social_following = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), default=AFFILIATE_PENDING, index=True, nullable=False)

    # Earnings buckets; lifetime = pending + paid
    lifetime_earnings_cents = Column(Integer, default=0, nullable=False)
    pending_earnings_cents = Column(Integer, default=0, nullable=False)
    paid_earnings_cents = Column(Integer, default=0, nullable=False)

    payout_email = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    user = relationship("User", back_populates="affiliate")
    referrals = relationship("Referral", back_populates="affiliate", cascade="all, delete-orphan", passive_deletes=True)
    commissions = relationship("Commission", back_populates="affiliate", cascade="all, delete-orphan", passive_deletes=True)
    payouts = relationship("Payout", back_populates="affiliate", cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "affiliateCode": self.affiliate_code,
            "userUid": self.user_uid,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "socialHandle": self.social_handle,
            "status": self.status,
            "payoutEmail": self.payout_email,
            "lifetimeEarnings": cents_to_dollars(self.lifetime_earnings_cents),
            "pendingEarnings": cents_to_dollars(self.pending_earnings_cents),
            "paidEarnings": cents_to_dollars(self.paid_earnings_cents),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Referral(Base):
    __tablename__ = "affiliate_referrals"

    id = Column(String(32), primary_key=True, default=_new_id)
    affiliate_id = Column(String(32), ForeignKey("affiliates.id", ondelete="CASCADE"), index=True, nullable=False)

    # Null until signup; a user is attributed to at most one referral
    user_uid = Column(String(128), ForeignKey("users.uid", ondelete="SET NULL"), unique=True, index=True, nullable=True)

    status = Column(String(20), default=REFERRAL_CLICKED, index=True, nullable=False)
    clicked_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    signed_up_at = Column(DateTime(timezone=True), nullable=True)
    converted_at = Column(DateTime(timezone=True), nullable=True)

    affiliate = relationship("Affiliate", back_populates="referrals")

    def to_dict(self):
        return {
            "id": self.id,
            "status": self.status,
            "userUid": self.user_uid,
            "clickedAt": self.clicked_at.isoformat() if self.clicked_at else None,
            "signedUpAt": self.signed_up_at.isoformat() if self.signed_up_at else None,
            "convertedAt": self.converted_at.isoformat() if self.converted_at else None,
        }


class Commission(Base):
    __tablename__ = "affiliate_commissions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    affiliate_id = Column(String(32), ForeignKey("affiliates.id", ondelete="CASCADE"), index=True, nullable=False)
    referral_id = Column(String(32), ForeignKey("affiliate_referrals.id", ondelete="SET NULL"), index=True, nullable=True)

    # Provider payment id; the unique index is the exactly-once guard
    payment_key = Column(String(255), unique=True, index=True, nullable=False)

    gross_cents = Column(Integer, default=0, nullable=False)
    amount_cents = Column(Integer, default=0, nullable=False)
    currency = Column(String(10), default="usd", nullable=False)

    status = Column(String(20), default=COMMISSION_PENDING, index=True, nullable=False)
    payout_id = Column(String(32), ForeignKey("affiliate_payouts.id", ondelete="SET NULL"), index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    affiliate = relationship("Affiliate", back_populates="commissions")

    def to_dict(self):
        return {
            "id": self.id,
            "amount": cents_to_dollars(self.amount_cents),
            "amountCents": int(self.amount_cents or 0),
            "grossCents": int(self.gross_cents or 0),
            "currency": self.currency,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Payout(Base):
    __tablename__ = "affiliate_payouts"

    id = Column(String(32), primary_key=True, default=_new_id)
    affiliate_id = Column(String(32), ForeignKey("affiliates.id", ondelete="CASCADE"), index=True, nullable=False)

    amount_cents = Column(Integer, nullable=False)
    destination = Column(String(255), nullable=False)
    status = Column(String(20), default=PAYOUT_REQUESTED, index=True, nullable=False)
    notes = Column(Text, nullable=True)

    requested_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    affiliate = relationship("Affiliate", back_populates="payouts")

    def to_dict(self):
        return {
            "id": self.id,
            "amount": cents_to_dollars(self.amount_cents),
            "amountCents": int(self.amount_cents or 0),
            "destination": self.destination,
            "status": self.status,
            "notes": self.notes,
            "requestedAt": self.requested_at.isoformat() if self.requested_at else None,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }
