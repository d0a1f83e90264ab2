#!/usr/bin/env python3
"""Send a signed Lemon Squeezy webhook to a running instance.

Usage examples:
  ./venv/bin/python scripts/send_test_webhook.py --user-id UID --variant-id 2222222
  ./venv/bin/python scripts/send_test_webhook.py --event subscription_expired \
    --user-id UID --subscription-id 123 --status expired

The signing secret is read from --secret or LEMON_WEBHOOK_SECRET.
"""

from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import os
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Tuple


def build_order_event(args: argparse.Namespace) -> Dict[str, Any]:
    order_id = args.order_id or f"smoke-{int(time.time())}"
    return {
        "meta": {
            "event_name": args.event,
            "test_mode": not args.live,
            "custom_data": {"user_id": args.user_id},
        },
        "data": {
            "type": "orders",
            "id": order_id,
            "attributes": {
                "user_email": args.email,
                "status": "paid",
                "currency": "USD",
                "total": 0,
                "first_order_item": {"variant_id": args.variant_id, "quantity": 1},
            },
        },
    }


def build_subscription_event(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "meta": {"event_name": args.event, "test_mode": not args.live, "custom_data": {"user_id": args.user_id}},
        "data": {
            "type": "subscriptions",
            "id": args.subscription_id,
            "attributes": {
                "store_id": args.store_id,
                "user_email": args.email,
                "variant_id": args.variant_id,
                "status": args.status,
            },
        },
    }


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def post(url: str, body: bytes, signature: str, timeout: float) -> Tuple[int, str]:
    req = urllib.request.Request(
        url=url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", "X-Signature": signature},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return int(response.getcode()), response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        return int(exc.code), exc.read().decode("utf-8", errors="replace")


def main() -> int:
    parser = argparse.ArgumentParser(description="Send a signed Lemon Squeezy webhook.")
    parser.add_argument("--base-url", default="http://127.0.0.1:5000")
    parser.add_argument("--secret", default="", help="Webhook signing secret (default: LEMON_WEBHOOK_SECRET)")
    parser.add_argument("--event", default="order_created")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--email", default="")
    parser.add_argument("--variant-id", default="")
    parser.add_argument("--order-id", default="")
    parser.add_argument("--subscription-id", default="")
    parser.add_argument("--store-id", default=os.getenv("LEMON_SQUEEZY_STORE_ID", ""))
    parser.add_argument("--status", default="active")
    parser.add_argument("--live", action="store_true", help="Mark the event as live instead of test mode")
    parser.add_argument("--timeout", default=10.0, type=float)
    args = parser.parse_args()

    secret = args.secret.strip() or os.getenv("LEMON_WEBHOOK_SECRET", "").strip()
    if not secret:
        print("Missing webhook secret (use --secret or LEMON_WEBHOOK_SECRET).")
        return 2

    if args.event.startswith("subscription_"):
        if not args.subscription_id:
            print("--subscription-id is required for subscription events.")
            return 2
        event = build_subscription_event(args)
    else:
        event = build_order_event(args)

    body = json.dumps(event).encode("utf-8")
    url = f"{args.base_url.rstrip('/')}/api/lemon/webhook"
    status, response_body = post(url, body, sign(body, secret), args.timeout)
    print(f"POST {url} -> {status}")
    print(response_body.strip())
    return 0 if status == 200 else 1


if __name__ == "__main__":
    raise SystemExit(main())
