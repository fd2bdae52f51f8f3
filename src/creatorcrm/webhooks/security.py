"""HMAC verification for platform webhooks."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass


class SignatureVerificationError(Exception):
    """Raised when a webhook signature cannot be validated."""


@dataclass(slots=True)
class SignatureContext:
    signature: str
    secret: str
    payload: bytes


def validate_hmac_signature(context: SignatureContext, *, algorithm: str = "sha256") -> None:
    """Validate a hex HMAC digest, accepting an optional ``<algorithm>=`` prefix."""

    if not context.signature:
        raise SignatureVerificationError("signature header missing")
    try:
        digestmod = getattr(hashlib, algorithm)
    except AttributeError as exc:  # pragma: no cover - safety guard
        raise SignatureVerificationError(f"unsupported hash algorithm: {algorithm}") from exc

    signature = context.signature
    prefix = f"{algorithm}="
    if signature.startswith(prefix):
        signature = signature[len(prefix):]

    computed = hmac.new(context.secret.encode("utf-8"), context.payload, digestmod=digestmod)
    if not hmac.compare_digest(computed.hexdigest(), signature):
        raise SignatureVerificationError("signature mismatch")
