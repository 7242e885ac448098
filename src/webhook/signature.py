"""HMAC signature verification for inbound webhooks."""

from __future__ import annotations

import base64
import hashlib
import hmac

SIGNATURE_HEADER = "signature"


def create_signature(body: bytes, secret: str) -> str:
    """Return the base64url (unpadded) HMAC-SHA256 of ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


class SignatureVerifier:
    """Verifies the ``signature`` header against the raw request body."""

    def __init__(self, secret: str, enabled: bool = True) -> None:
        if enabled and not secret:
            raise ValueError("A signing secret is required when verification is enabled")
        self._secret = secret
        self.enabled = enabled

    def verify(self, headers: dict[str, str], body: bytes) -> bool:
        """Return True if the request is authentic (or verification is off).

        Uses constant-time comparison via hmac.compare_digest.
        """
        if not self.enabled:
            return True
        signature = headers.get(SIGNATURE_HEADER, "")
        if not signature or not body:
            return False
        return hmac.compare_digest(signature, create_signature(body, self._secret))
