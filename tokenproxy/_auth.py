"""
Checking the caller's token.

Exactly one way of presenting the token is active at a time:

    bearer:       Authorization: Bearer <token>
    proxy-basic:  Proxy-Authorization: Basic base64("proxy:<token>")

The second one is what ordinary HTTP clients send when given a proxy
URL like http://proxy:<token>@host:7788.
"""

import binascii
import enum
import hmac
import logging
from base64 import b64decode
from typing import Iterable, Optional, Tuple

from ._config import AuthScheme
from ._headers import get_header


logger = logging.getLogger("tokenproxy.auth")

PROXY_USERNAME = b"proxy"


class AuthResult(enum.Enum):
    AUTHORIZED = "authorized"
    UNAUTHORIZED = "unauthorized"


def authenticate(presented: Optional[bytes], configured: bytes) -> AuthResult:
    """
    Compare the presented token to the configured one, in constant time.

    An absent token is compared too (against an empty string) and
    fails, so absence and mismatch take the same path.
    """
    candidate = presented if presented is not None else b""
    matches = hmac.compare_digest(candidate, configured)
    if matches and presented is not None:
        return AuthResult.AUTHORIZED
    return AuthResult.UNAUTHORIZED


def _split_scheme(value: bytes, scheme: bytes) -> Optional[bytes]:
    parts = value.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != scheme:
        return None
    return parts[1].strip()


def extract_bearer(headers: Iterable[Tuple[bytes, bytes]]) -> Optional[bytes]:
    value = get_header(headers, b"authorization")
    if value is None:
        return None
    return _split_scheme(value, b"bearer")


def extract_proxy_basic(headers: Iterable[Tuple[bytes, bytes]]) -> Optional[bytes]:
    value = get_header(headers, b"proxy-authorization")
    if value is None:
        return None
    encoded = _split_scheme(value, b"basic")
    if encoded is None:
        return None
    try:
        decoded = b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    username, colon, token = decoded.partition(b":")
    if not colon or not hmac.compare_digest(username, PROXY_USERNAME):
        return None
    return token


class AuthGate:
    """
    Decides whether a request may use the proxy.

    Never logs the token itself, only the peer and the decision.
    """

    def __init__(self, token: str, scheme: AuthScheme = AuthScheme.BEARER):
        self._token = token.encode("utf-8")
        self.scheme = scheme
        if scheme is AuthScheme.BEARER:
            self.credential_header = b"authorization"
            self._extract = extract_bearer
        else:
            self.credential_header = b"proxy-authorization"
            self._extract = extract_proxy_basic

    def check(self, headers: Iterable[Tuple[bytes, bytes]], peer: str = "unknown", target: str = "") -> AuthResult:
        result = authenticate(self._extract(headers), self._token)
        if result is AuthResult.AUTHORIZED:
            logger.debug("Authorized request from %s", peer)
        else:
            logger.warning("Unauthorized access attempt from %s (target %s)", peer, target or "-")
        return result

    def challenge(self) -> Tuple[bytes, bytes]:
        """The header telling a client how to authenticate."""
        if self.scheme is AuthScheme.BEARER:
            return (b"WWW-Authenticate", b'Bearer realm="tokenproxy"')
        return (b"Proxy-Authenticate", b'Basic realm="tokenproxy"')
