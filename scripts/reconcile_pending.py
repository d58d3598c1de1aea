"""Ask the payments service to re-verify orders stuck in `processing`.

Meant for a cron job; safe to re-run because the reconciler never regresses a
terminal order.
"""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for the stale-order sweep."""

    parser = argparse.ArgumentParser(description="Re-verify stale processing orders with their providers.")
    parser.add_argument("--api-url", default="http://localhost:5000")
    parser.add_argument("--older-than-minutes", type=int, default=30)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.api_url}/internal/orders/reconcile",
        json={"olderThanMinutes": args.older_than_minutes, "limit": args.limit},
        timeout=120.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
