"""
Mint a signed identity token for local development.

Production tokens come from the identity provider; this signs with the same
SECRET_KEY so a dev server accepts it.

Usage:
  python scripts/issue_token.py --custom-id U1 [--wallet 0xabc...]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv  # noqa: E402

from app.docledger.auth import Identity, IdentityProvider  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Issue a dev identity token.")
    parser.add_argument("--custom-id", required=True)
    parser.add_argument("--wallet", default=None)
    args = parser.parse_args(argv)

    load_dotenv()
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        print("Refusing to mint tokens in production.", file=sys.stderr)
        return 1

    provider = IdentityProvider(
        os.environ.get("SECRET_KEY") or "change-me",
        max_age_seconds=int(os.environ.get("AUTH_TOKEN_MAX_AGE_SECONDS") or 86400),
    )
    print(provider.issue(Identity(custom_id=args.custom_id.strip(), wallet_address=args.wallet)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
