"""
Webhook Security Module

Signature verification for inbound provider webhooks:
- Constant-time signature comparison (prevents timing attacks)
- Mercado Pago "x-signature" manifest verification
"""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def parse_mercadopago_signature(signature_header: Optional[str]) -> tuple:
    """
    Split a Mercado Pago "x-signature" header ("ts=...,v1=...") into (ts, v1).
    Missing parts come back as None.
    """
    ts = None
    v1 = None
    if not signature_header:
        return ts, v1

    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            ts = value or None
        elif key == "v1":
            v1 = value or None
    return ts, v1


def build_mercadopago_manifest(request_id: str, ts: str) -> str:
    return f"id:{request_id};request-id:{request_id};ts:{ts};"


def verify_mercadopago_signature(
    signature_header: Optional[str], request_id: Optional[str], secret: Optional[str]
) -> bool:
    """
    Verify a Mercado Pago notification signature.

    The v1 value is the hex HMAC-SHA256 of the manifest
    "id:{request_id};request-id:{request_id};ts:{ts};" keyed with the webhook secret.
    """
    if not signature_header or not request_id or not secret:
        return False

    ts, v1 = parse_mercadopago_signature(signature_header)
    if not ts or not v1:
        return False

    manifest = build_mercadopago_manifest(request_id, ts)
    expected = compute_hmac_sha256(secret, manifest.encode("utf-8"))
    return constant_time_compare(expected, v1)


async def verify_mercadopago_webhook(
    request: Request, secret: Optional[str], raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify Mercado Pago webhook signature.

    Mercado Pago uses:
    - Header: 'x-signature' (format: "ts=<timestamp>,v1=<hex_digest>")
    - Header: 'x-request-id' (part of the signed manifest)

    Args:
        request: FastAPI request object
        secret: Webhook secret from the Mercado Pago dashboard
        raise_on_failure: If True, raises HTTPException on failure

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()

    if not secret:
        logger.error("❌ MERCADOPAGO_WEBHOOK_SECRET not configured, rejecting webhook")
        if raise_on_failure:
            raise HTTPException(status_code=500, detail="Webhook secret not configured")
        return False, raw_body

    signature_header = request.headers.get("x-signature")
    request_id = request.headers.get("x-request-id")

    if not signature_header or not request_id:
        logger.warning("🚫 Mercado Pago webhook missing signature headers")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    if not verify_mercadopago_signature(signature_header, request_id, secret):
        logger.warning("🚫 Mercado Pago webhook signature mismatch")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, raw_body

    logger.debug("✅ Mercado Pago webhook signature verified")
    return True, raw_body
