"""HMAC-signed, expiring download URLs for session blobs.

Token layout: ``<payload>.<signature>`` where ``payload`` is the
unpadded urlsafe base64 of ``"<expires_epoch>:<request_id>"`` and
``signature`` is the unpadded urlsafe base64 of HMAC-SHA256(payload).
"""

import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlencode

DEFAULT_SIGNED_URL_TTL_SECONDS = 3600


class InvalidSignedTokenError(Exception):
    """Raised when a download token is malformed, forged, expired, or
    bound to a different request."""


@dataclass(frozen=True)
class SignedToken:
    token: str
    expires_at: datetime


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(payload: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), payload.encode("ascii"), hashlib.sha256
    ).digest()
    return _b64encode(digest)


def generate_signed_token(
    request_id: str,
    secret: str,
    ttl_seconds: int = DEFAULT_SIGNED_URL_TTL_SECONDS,
    now: Optional[float] = None,
) -> SignedToken:
    """Mint a token granting download access to one request's session."""
    if not secret:
        raise ValueError("signing secret must not be empty")
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")

    issued = time.time() if now is None else now
    expires = int(issued) + ttl_seconds
    payload = _b64encode(f"{expires}:{request_id}".encode("utf-8"))
    return SignedToken(
        token=f"{payload}.{_sign(payload, secret)}",
        expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
    )


def verify_signed_token(
    token: str,
    request_id: str,
    secret: str,
    now: Optional[float] = None,
) -> None:
    """Validate a token for ``request_id``.

    Raises:
        InvalidSignedTokenError: On any mismatch. The message never
            echoes the token.
    """
    payload, sep, signature = token.partition(".")
    if not sep or not payload or not signature:
        raise InvalidSignedTokenError("malformed token")

    if not hmac.compare_digest(signature, _sign(payload, secret)):
        raise InvalidSignedTokenError("bad signature")

    try:
        decoded = _b64decode(payload).decode("utf-8")
        expires_text, _, bound_request_id = decoded.partition(":")
        expires = int(expires_text)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise InvalidSignedTokenError("malformed payload") from e

    current = time.time() if now is None else now
    if current >= expires:
        raise InvalidSignedTokenError("token expired")
    if bound_request_id != request_id:
        raise InvalidSignedTokenError("token does not match request")


def build_session_download_url(base_url: str, request_id: str, token: str) -> str:
    return "{base}/api/requests/{rid}/handover?{query}".format(
        base=base_url.rstrip("/"),
        rid=quote(request_id, safe=""),
        query=urlencode({"token": token, "format": "session"}),
    )
