"""
Webhook payload authentication.

The digest must be computed over the request body exactly as it was received.
Parsing and re-serializing the JSON changes whitespace and key order, so the
raw bytes are captured before anything else touches them.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from respawn.errors import AuthenticationError

SIGNATURE_PREFIX = "sha256="


def sign(body: bytes, secret: str) -> str:
    digest = hmac.new(key=secret.encode(), msg=body, digestmod=hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check a `sha256=<hex>` signature header against `body`.

    Never raises: a missing secret, a missing header or a malformed header all
    return False.
    """
    if not secret or not signature:
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        return False
    try:
        provided = signature.encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(provided, sign(body, secret).encode("ascii"))


def check_signature(body: bytes, signature: Optional[str], secret: str) -> None:
    if signature is None:
        raise AuthenticationError("missing signature header")
    if not verify(body, signature, secret):
        raise AuthenticationError("invalid signature")
