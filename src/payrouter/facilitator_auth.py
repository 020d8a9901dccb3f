"""Facilitator API authentication — short-lived Ed25519 JWTs.

Hosted facilitators (e.g. Coinbase CDP) authenticate each request with a
bearer JWT signed by the operator's API key. Public facilitators need no
credentials; the client only calls this module when a key is configured.
"""

from __future__ import annotations

import base64
import binascii
import secrets
import time
from urllib.parse import urlsplit

import jwt
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import load_pem_private_key


class FacilitatorAuthError(Exception):
    """Raised when facilitator API credentials are unusable."""


def load_signing_key(secret: str) -> Ed25519PrivateKey:
    """Accept a PEM private key or bare base64 Ed25519 key material.

    Bare base64 may hold a 32-byte seed or a 64-byte seed+public key pair
    (the format CDP hands out).
    """
    stripped = secret.strip()
    if stripped.startswith("-----"):
        try:
            key = load_pem_private_key(stripped.encode(), password=None)
        except (ValueError, TypeError) as e:
            raise FacilitatorAuthError(f"Invalid facilitator key PEM: {e}") from e
        if not isinstance(key, Ed25519PrivateKey):
            raise FacilitatorAuthError("Facilitator key must be an Ed25519 key.")
        return key

    try:
        raw = base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FacilitatorAuthError(f"Facilitator key is not valid base64: {e}") from e
    if len(raw) not in (32, 64):
        raise FacilitatorAuthError(
            f"Facilitator key must decode to 32 or 64 bytes, got {len(raw)}."
        )
    return Ed25519PrivateKey.from_private_bytes(raw[:32])


def build_facilitator_jwt(
    key_id: str,
    secret: str,
    method: str,
    url: str,
    *,
    expires_in: int = 120,
) -> str:
    """Sign a JWT bound to one ``METHOD host/path`` request."""
    key = load_signing_key(secret)
    parts = urlsplit(url)
    now = int(time.time())
    claims = {
        "sub": key_id,
        "iss": "cdp",
        "nbf": now,
        "exp": now + expires_in,
        "uri": f"{method.upper()} {parts.netloc}{parts.path}",
    }
    headers = {"kid": key_id, "nonce": secrets.token_hex(16)}
    return jwt.encode(claims, key, algorithm="EdDSA", headers=headers)
