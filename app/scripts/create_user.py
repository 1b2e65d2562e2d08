"""
Create User
===========

Operator script for onboarding: creates a user, issues an API key and starts
the 14-day starter trial. The raw key is printed once and never stored.

Usage:
    python -m app.scripts.create_user --email ama@example.com --phone +233241234567
"""

import argparse
import sys

from sqlalchemy.exc import IntegrityError

from app.auth.api_key_auth import create_api_key
from app.core.database import get_session_context, init_db
from app.models.user import User
from app.services.subscription_service import subscription_service


def create_user(email: str, phone_number=None, label=None) -> dict:
    """Create the user row, its first API key and the trial subscription."""
    user = User(email=email.strip().lower(), phone_number=phone_number)
    with get_session_context() as session:
        session.add(user)
        session.commit()
        session.refresh(user)

    api_key = create_api_key(user.id, label=label or "default")
    subscription = subscription_service.create_initial_subscription(user.id)
    return {"user_id": user.id, "api_key": api_key, "subscription": subscription}


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a user with an API key and a trial subscription")
    parser.add_argument("--email", required=True, help="Customer email (Paystack identity)")
    parser.add_argument("--phone", default=None, help="Mobile-money number in E.164 form")
    parser.add_argument("--label", default=None, help="API key label")
    args = parser.parse_args()

    init_db()

    try:
        result = create_user(args.email, args.phone, args.label)
    except IntegrityError:
        print(f"A user with email {args.email} already exists.", file=sys.stderr)
        sys.exit(1)

    sub = result["subscription"]
    print(f"User:    {result['user_id']}")
    print(f"Plan:    {sub['plan']} ({sub['status']}, trial ends {sub['trial_end_date']})")
    print(f"API key: {result['api_key']}")
    print("\nStore the key now; it cannot be shown again.")


if __name__ == "__main__":
    main()
