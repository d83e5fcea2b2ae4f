"""Errors raised by the affiliate program helpers.

Routers turn these into JSON responses using ``status_code`` and ``code``.
Idempotent no-ops (duplicate payments, repeated signups) are not errors and
never raise.
"""


class AffiliateError(Exception):
    status_code = 400
    code = "affiliate_error"
    default_message = "Affiliate request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


class DuplicateAffiliate(AffiliateError):
    status_code = 409
    code = "duplicate_affiliate"
    default_message = "An affiliate account already exists for this user or email"


class AffiliateNotFound(AffiliateError):
    status_code = 404
    code = "affiliate_not_found"
    default_message = "Not an affiliate"


class InvalidAffiliateCode(AffiliateError):
    code = "invalid_affiliate_code"
    default_message = "Invalid affiliate code"


class InvalidTransition(AffiliateError):
    status_code = 409
    code = "invalid_transition"
    default_message = "Invalid status transition"


class NotApproved(AffiliateError):
    status_code = 403
    code = "not_approved"
    default_message = "Affiliate account not approved"


class BelowMinimum(AffiliateError):
    code = "below_minimum"
    default_message = "Payout amount is below the minimum"


class InsufficientFunds(BelowMinimum):
    code = "insufficient_funds"
    default_message = "Insufficient balance"


class InvalidAmount(AffiliateError):
    code = "invalid_amount"
    default_message = "Invalid amount"


class InvalidPayoutDestination(AffiliateError):
    code = "invalid_destination"
    default_message = "A valid payout email is required"


class PayoutNotFound(AffiliateError):
    status_code = 404
    code = "payout_not_found"
    default_message = "Payout not found"
