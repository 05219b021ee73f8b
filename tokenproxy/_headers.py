import enum
from typing import Iterable, List, Optional, Tuple


Headers = List[Tuple[bytes, bytes]]

# RFC 7230, section 6.1, plus the long-deprecated Proxy-Connection,
# which some clients still send.
HOP_BY_HOP = frozenset({
    b"connection",
    b"keep-alive",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"proxy-connection",
    b"te",
    b"trailer",
    b"transfer-encoding",
    b"upgrade",
})


class Direction(enum.Enum):
    OUTBOUND_REQUEST = "outbound-request"
    INBOUND_RESPONSE = "inbound-response"


def connection_tokens(headers: Iterable[Tuple[bytes, bytes]]) -> frozenset:
    """Header names listed in any Connection header, lowercased."""
    names = set()
    for name, value in headers:
        if name.lower() == b"connection":
            names.update(token.strip().lower() for token in value.split(b",") if token.strip())
    return frozenset(names)


def sanitize(
        headers: Iterable[Tuple[bytes, bytes]],
        direction: Direction,
        user_agent: Optional[bytes] = None,
    ) -> Headers:
    """
    Drop hop-by-hop headers, keeping the order of everything else.

    Going out, the User-Agent is replaced wholesale by `user_agent`.
    Applying this twice gives the same result as applying it once.
    """
    headers = list(headers)
    dropped = HOP_BY_HOP | connection_tokens(headers)
    if direction is Direction.OUTBOUND_REQUEST and user_agent is not None:
        dropped |= {b"user-agent"}

    result = [(name, value) for name, value in headers if name.lower() not in dropped]

    if direction is Direction.OUTBOUND_REQUEST and user_agent is not None:
        result.append((b"User-Agent", user_agent))
    return result


def without(headers: Iterable[Tuple[bytes, bytes]], *names: bytes) -> Headers:
    """Drop the named headers (case-insensitively)."""
    lowered = {name.lower() for name in names}
    return [(name, value) for name, value in headers if name.lower() not in lowered]


def get_header(headers: Iterable[Tuple[bytes, bytes]], name: bytes) -> Optional[bytes]:
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None
