#!/usr/bin/env python3
"""CLI script to mint a development access token for an account.

Usage:
    uv run python scripts/issue_token.py --account acct_123
    uv run python scripts/issue_token.py --account acct_123 --minutes 240

Signs with JWT_SECRET_KEY from environment or .env file. Production tokens
come from the identity service; this is for local use against the API.
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta

# Ensure project root is on sys.path so we can import src.copileo
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a development access token")
    parser.add_argument("--account", required=True, help="Account id (token subject)")
    parser.add_argument(
        "--minutes",
        type=int,
        default=None,
        help="Lifetime in minutes (default: JWT_ACCESS_TOKEN_EXPIRE_MINUTES)",
    )
    args = parser.parse_args()

    from src.copileo.core.security import create_access_token

    expires = timedelta(minutes=args.minutes) if args.minutes else None
    print(create_access_token(args.account, expires_delta=expires))


if __name__ == "__main__":
    main()
