from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime

SIGNATURE_HEADER = {
    "whatsapp": "X-Hub-Signature-256",
    "sms": "X-Sms-Signature",
    "email": "X-Email-Signature",
}


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def fetch_message_ids(base_url: str, campaign_id: str) -> list[str]:
    url = f"{base_url}/campaigns/{campaign_id}/recipients?delivery_status=sent"
    with urllib.request.urlopen(url, timeout=15) as response:
        recipients = json.loads(response.read().decode("utf-8"))
    return [item["provider_message_id"] for item in recipients if item.get("provider_message_id")]


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Replay provider delivery callbacks for a running campaign."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--channel", choices=sorted(SIGNATURE_HEADER), default="whatsapp")
    parser.add_argument("--campaign-id", required=True)
    parser.add_argument(
        "--event-type", choices=["delivered", "read", "failed", "bounced"], default="delivered"
    )
    parser.add_argument("--secret", default="")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    endpoint = f"{base_url}/webhooks/{args.channel}"
    message_ids = fetch_message_ids(base_url, args.campaign_id)
    if not message_ids:
        print("no sent recipients with provider message ids", file=sys.stderr)
        return 1

    for index, message_id in enumerate(message_ids, start=1):
        payload = {
            "event_id": f"evt_mock_{args.event_type}_{message_id}",
            "event_type": args.event_type,
            "provider_message_id": message_id,
            "occurred_at_utc": datetime.utcnow().isoformat(),
            "payload": {"source": "mock_delivery_events", "index": index},
        }
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            headers[SIGNATURE_HEADER[args.channel]] = sign_payload(args.secret, body)
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {message_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
