"""Webhook authenticity check.

Wraps ``stripe.WebhookSignature.verify_header`` so callers get a typed
result instead of an exception; a bad signature is an expected outcome.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import stripe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureCheck:
    ok: bool
    event: dict[str, Any] | None = None
    reason: str | None = None


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = 300,
) -> SignatureCheck:
    if not header:
        return SignatureCheck(ok=False, reason="missing_signature")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        return SignatureCheck(ok=False, reason="invalid_encoding")
    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature rejected: %s", exc)
        return SignatureCheck(ok=False, reason="invalid_signature")
    try:
        event = json.loads(body)
    except ValueError:
        return SignatureCheck(ok=False, reason="invalid_json")
    if not isinstance(event, dict):
        return SignatureCheck(ok=False, reason="invalid_json")
    return SignatureCheck(ok=True, event=event)
