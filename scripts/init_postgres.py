"""
Initialize PostgreSQL database schema
Creates all tables defined in models
"""
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, engine
from models.user import User  # noqa: F401
from models.affiliates import Affiliate, Referral, Commission, Payout  # noqa: F401
from models.pricing import PricingEvent  # noqa: F401


def init_database():
    """Create all tables in the database"""
    print("Creating PostgreSQL tables...")

    try:
        Base.metadata.create_all(bind=engine)
        print("✓ Tables created successfully!")
        print("\nCreated tables:")
        for name in Base.metadata.sorted_tables:
            print(f"  - {name}")
    except Exception as e:
        print(f"✗ Error creating tables: {e}")
        sys.exit(1)

if __name__ == "__main__":
    init_database()
