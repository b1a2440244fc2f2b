#!/usr/bin/env python3
"""
Mint a bearer token for local development.

Reads JWT_SECRET from the .env file.
Run from project root: python scripts/mint_dev_token.py <user_id> [tenant_id] [role ...]
"""

import os
import sys

from dotenv import load_dotenv

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(project_root, ".env"))

from adspulse.auth import create_access_token  # noqa: E402
from adspulse.config import settings  # noqa: E402


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/mint_dev_token.py <user_id> [tenant_id] [role ...]")
        sys.exit(1)
    if not settings.jwt_secret:
        print("Error: JWT_SECRET must be set in .env")
        sys.exit(1)

    user_id = sys.argv[1]
    tenant_id = sys.argv[2] if len(sys.argv) > 2 and sys.argv[2] != "-" else None
    roles = sys.argv[3:] or ["admin"]

    print(create_access_token(user_id, tenant_id=tenant_id, roles=roles, expires_minutes=8 * 60))


if __name__ == "__main__":
    main()
