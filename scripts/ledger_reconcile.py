"""Run the balance conservation check for one or more creators."""

import argparse
import json
import os
import sys

import httpx


def main() -> None:
    """CLI entrypoint; exits 1 when any creator's balance does not reconcile."""

    parser = argparse.ArgumentParser(description="Check creator balances against completed transactions and payouts.")
    parser.add_argument("creator_ids", nargs="+")
    parser.add_argument("--ledger-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    args = parser.parse_args()

    reports = []
    with httpx.Client(base_url=args.ledger_url, headers={"x-api-key": args.api_key}, timeout=10.0) as client:
        for creator_id in args.creator_ids:
            resp = client.get(f"/reconciliation/{creator_id}")
            resp.raise_for_status()
            reports.append(resp.json())

    imbalanced = [report["creator_id"] for report in reports if not report["balanced"]]
    print(json.dumps({"checked": len(reports), "imbalanced": imbalanced, "reports": reports}, indent=2))
    if imbalanced:
        sys.exit(1)


if __name__ == "__main__":
    main()
