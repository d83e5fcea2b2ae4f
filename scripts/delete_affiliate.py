"""
Delete the affiliate record owned by an account email
Referrals, commissions and payouts are removed with it; the user account stays
Usage: python scripts/delete_affiliate.py someone@example.com
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import SessionLocal
from utils.affiliate_registry import get_affiliate_by_user, get_user_by_email


def delete_affiliate_for_email(email: str) -> bool:
    db = SessionLocal()
    try:
        user = get_user_by_email(db, email)
        if not user:
            print(f"User not found with email: {email}")
            return False
        print(f"Found user: {user.uid} {user.email}")

        affiliate = get_affiliate_by_user(db, user.uid)
        if not affiliate:
            print("User has no affiliate record")
            return False
        print(f"Found affiliate: {affiliate.id} {affiliate.affiliate_code}")

        db.delete(affiliate)
        db.commit()
        print("✓ Affiliate record deleted. The user can register again.")
        return True
    except Exception as e:
        db.rollback()
        print(f"✗ Error deleting affiliate: {e}")
        return False
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python scripts/delete_affiliate.py <email>")
        sys.exit(2)
    sys.exit(0 if delete_affiliate_for_email(sys.argv[1]) else 1)
