"""Stateless HMAC signatures for local-storage download URLs.

A signature covers bucket + path + expiry so that a URL handed to a
generation provider works for a limited time without a DB lookup.
"""

import base64
import hashlib
import hmac
import time


def sign_storage_path(bucket: str, path: str, expires_at: int, secret: str) -> str:
    """Create a URL-safe signature for one object until ``expires_at`` (epoch seconds)."""
    message = f"{bucket}\n{path}\n{expires_at}".encode()
    sig = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(sig).decode().rstrip("=")


def verify_storage_signature(
    bucket: str,
    path: str,
    expires_at: int,
    signature: str,
    secret: str,
    now: float | None = None,
) -> None:
    """Verify a signature produced by sign_storage_path.

    Raises ValueError on a bad or expired signature.
    """
    current = time.time() if now is None else now
    if current > expires_at:
        raise ValueError("Signed URL expired")

    expected = sign_storage_path(bucket, path, expires_at, secret)
    if not hmac.compare_digest(signature, expected):
        raise ValueError("Invalid signature")
