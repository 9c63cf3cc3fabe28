"""Unverified JWT claim helpers.

These read claims for scheduling and integrity checks only. Signature
verification is the server's job; nothing here grants access.
"""

import time
from typing import Optional

import jwt

DEFAULT_BUFFER_MINUTES = 10
MIN_REFRESH_TOKEN_LENGTH = 20


def token_claims(token: Optional[str]) -> Optional[dict]:
    """Decode a JWT payload without verifying it.

    Returns None for anything that is not a decodable JWT.

    >>> token_claims("not-a-jwt") is None
    True
    >>> token_claims(None) is None
    True
    """
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    return claims if isinstance(claims, dict) else None


def token_expiry(token: Optional[str]) -> Optional[float]:
    """Return the ``exp`` claim as epoch seconds, or None if absent/undecodable.

    >>> tok = jwt.encode({"exp": 1700000000}, "k" * 32, algorithm="HS256")
    >>> token_expiry(tok)
    1700000000.0
    >>> token_expiry(jwt.encode({"sub": "1"}, "k" * 32, algorithm="HS256")) is None
    True
    """
    claims = token_claims(token)
    if not claims:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


def is_expiring_soon(
    token: Optional[str],
    buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
    now: Optional[float] = None,
) -> bool:
    """True when the token expires within ``buffer_minutes`` or can't be read.

    The boundary is inclusive: expiry exactly at now + buffer counts as expiring.

    >>> tok = jwt.encode({"exp": 1000 + 600}, "k" * 32, algorithm="HS256")
    >>> is_expiring_soon(tok, 10, now=1000)
    True
    >>> is_expiring_soon(tok, 10, now=999)
    False
    >>> is_expiring_soon("garbage", 10, now=1000)
    True
    """
    exp = token_expiry(token)
    if exp is None:
        return True
    current = time.time() if now is None else now
    return exp <= current + buffer_minutes * 60


def email_from_token(token: Optional[str]) -> Optional[str]:
    """Return the ``email`` claim, or None.

    >>> email_from_token(jwt.encode({"email": "a@b.co"}, "k" * 32, algorithm="HS256"))
    'a@b.co'
    """
    claims = token_claims(token)
    if not claims:
        return None
    email = claims.get("email")
    return email if isinstance(email, str) and email else None


def is_refresh_token_plausible(
    refresh_token: Optional[str], min_length: int = MIN_REFRESH_TOKEN_LENGTH
) -> bool:
    """Shape check for a refresh token: present and at least ``min_length`` long.

    >>> is_refresh_token_plausible("x" * 20)
    True
    >>> is_refresh_token_plausible("short")
    False
    >>> is_refresh_token_plausible(None)
    False
    """
    return bool(refresh_token) and len(refresh_token) >= min_length
