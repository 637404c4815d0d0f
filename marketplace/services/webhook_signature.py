"""Mercado Pago webhook signature verification (HMAC-SHA256)."""

import hashlib
import hmac


def parse_signature_header(header: str) -> dict:
    """
    Split an ``x-signature`` header of the form ``ts=...,v1=...``.

    Unknown or malformed parts are ignored.
    """
    parts = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_manifest(data_id: str | None, request_id: str | None, ts: str | None) -> str:
    """
    Build the signed template.

    Components that are absent from the request are left out of the
    template, as the gateway does.
    """
    manifest = ""
    if data_id:
        manifest += f"id:{str(data_id).lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    if ts:
        manifest += f"ts:{ts};"
    return manifest


def generate_signature(secret: str, data_id: str | None, request_id: str | None, ts: str | None) -> str:
    """Lower-case hex HMAC-SHA256 of the manifest."""
    manifest = build_manifest(data_id, request_id, ts)
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(
    secret: str, signature_header: str | None, request_id: str | None, data_id: str | None
) -> bool:
    """Check an ``x-signature`` header against the configured secret."""
    parts = parse_signature_header(signature_header or "")
    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received:
        return False
    expected = generate_signature(secret, data_id, request_id, ts)
    return hmac.compare_digest(expected, received)
