"""Report which Stripe price ids are configured for every market, plan and token package.

Usage: ``python -m backend.check_price_config``. Exits with status 1 when any
market-specific price variable is missing.
"""
import os
import sys
from typing import Mapping, Optional

from dotenv import load_dotenv

from backend.app.entitlements import audit_price_configuration


def _mask(price_id: str) -> str:
    if len(price_id) <= 12:
        return price_id
    return f"{price_id[:12]}..."


def main(env: Optional[Mapping[str, str]] = None) -> int:
    if env is None:
        load_dotenv()
        env = os.environ
    report = audit_price_configuration(env)

    print("Configured prices:")
    for name, price_id in report.configured:
        print(f"  {name} = {_mask(price_id)}")
    if not report.configured:
        print("  (none)")

    print("Missing market prices:")
    for name in report.missing:
        print(f"  {name}")
    if not report.missing:
        print("  (none)")

    print("Legacy fallback prices:")
    for name in report.legacy_configured:
        print(f"  {name} (set)")
    for name in report.legacy_missing:
        print(f"  {name} (not set)")

    if report.is_complete:
        print("All market prices are configured.")
        return 0
    print(f"{len(report.missing)} market price(s) missing; checkouts will use legacy prices or fail.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
