from __future__ import annotations

import hashlib
import hmac
from typing import Any, Optional

from starlette.datastructures import Headers

from leadflow.models import DeliveryEventRequest

SIGNATURE_HEADERS = {
    "whatsapp": ["x-hub-signature-256", "x-whatsapp-signature-256", "x-webhook-signature"],
    "sms": ["x-sms-signature", "x-provider-signature", "x-webhook-signature"],
    "email": ["x-email-signature", "x-provider-signature", "x-webhook-signature"],
}


class SignatureVerificationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def sign_body(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _verify_hmac_sha256(raw_body: bytes, secret: str, incoming_signature: str) -> bool:
    provided = incoming_signature.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    return hmac.compare_digest(sign_body(raw_body, secret), provided)


def verify_signature(channel: str, headers: Headers, raw_body: bytes, secret: str) -> None:
    if not secret:
        return
    signature = _header_value(headers, SIGNATURE_HEADERS.get(channel, ["x-webhook-signature"]))
    if not signature:
        raise SignatureVerificationError(f"missing {channel} signature header")
    if not _verify_hmac_sha256(raw_body, secret, signature):
        raise SignatureVerificationError(f"invalid {channel} signature")


def parse_delivery_events(body: Any) -> list[DeliveryEventRequest]:
    """Accept a single event object or a batch under ``events``."""
    if isinstance(body, dict) and isinstance(body.get("events"), list):
        items = body["events"]
    elif isinstance(body, list):
        items = body
    else:
        items = [body]
    return [DeliveryEventRequest.model_validate(item) for item in items]
