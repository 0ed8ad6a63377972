#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import uuid
from pathlib import Path
from typing import Any, Dict

import httpx

# Make project modules importable when script is run from tools/.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from settlement.models import OrderKind  # noqa: E402
from settlement.signature import SIGNATURE_HEADER, build_signature_header  # noqa: E402

EVENT_TYPES = (
    "payment.paid",
    "payment.failed",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "checkout_session.payment.paid",
    "source.chargeable",
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sign and send a sample PayMongo event to /webhooks/paymongo")
    parser.add_argument(
        "--webhook-url",
        default=os.getenv("SETTLEMENT_WEBHOOK_URL", "http://127.0.0.1:8020/webhooks/paymongo"),
        help="Target webhook URL",
    )
    parser.add_argument("--event-type", choices=EVENT_TYPES, default="payment.paid")
    parser.add_argument("--order-id", required=True, help="Order id written into the event metadata")
    parser.add_argument(
        "--order-kind",
        choices=[kind.value for kind in OrderKind] + ["none"],
        default="none",
        help="Value for metadata.order_kind; 'none' omits the tag",
    )
    parser.add_argument("--user-id", default="", help="Owner for credit purchases")
    parser.add_argument("--credits", default="", help="Credit amount for credit purchases")
    parser.add_argument("--amount", type=int, default=10000, help="Amount in centavos")
    parser.add_argument("--live", action="store_true", help="Sign in the li= (live mode) slot")
    parser.add_argument("--unsigned", action="store_true", help="Send without a signature header")
    parser.add_argument("--timeout", type=float, default=float(os.getenv("SETTLEMENT_HTTP_TIMEOUT", "15")))
    return parser.parse_args()


def build_event(args: argparse.Namespace) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"order_id": args.order_id}
    if args.order_kind != "none":
        metadata["order_kind"] = args.order_kind
    if args.user_id:
        metadata["user_id"] = args.user_id
    if args.credits:
        metadata["credits"] = str(args.credits)

    resource_prefix = "src" if args.event_type == "source.chargeable" else "pay"
    resource_type = "source" if args.event_type == "source.chargeable" else "payment"
    return {
        "data": {
            "id": f"evt_{uuid.uuid4().hex[:24]}",
            "type": "event",
            "attributes": {
                "type": args.event_type,
                "livemode": bool(args.live),
                "data": {
                    "id": f"{resource_prefix}_{uuid.uuid4().hex[:24]}",
                    "type": resource_type,
                    "attributes": {
                        "amount": int(args.amount),
                        "currency": "PHP",
                        "status": "chargeable" if resource_type == "source" else "paid",
                        "metadata": metadata,
                    },
                },
            },
        }
    }


def main() -> int:
    args = parse_args()
    payload = build_event(args)
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if not args.unsigned:
        secret = str(os.getenv("PAYMONGO_WEBHOOK_SECRET", "")).strip()
        if not secret:
            raise RuntimeError("missing required env var: PAYMONGO_WEBHOOK_SECRET (or pass --unsigned)")
        headers[SIGNATURE_HEADER] = build_signature_header(body, secret, live=args.live)

    with httpx.Client(timeout=args.timeout, trust_env=False) as client:
        response = client.post(args.webhook_url, content=body, headers=headers)
    print(f"[send-test-webhook] {args.event_type} order={args.order_id} -> HTTP {response.status_code}")
    print(response.text)
    return 0 if response.status_code < 400 else 1


if __name__ == "__main__":
    raise SystemExit(main())
