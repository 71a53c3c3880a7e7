"""
Security module for the Hive signer service.

Shared-secret authentication and client identification for rate limiting.
"""

from typing import Mapping, Optional

from hive_signer.util import constant_time_compare

SIGNER_TOKEN_HEADER = "x-signer-token"


class AuthStatus:
    NOT_PROVIDED = "not-provided"
    VALID = "valid"
    INVALID = "invalid"


def check_signer_token(provided: Optional[str], expected: str) -> str:
    """
    Compare a presented signer token with the configured one.

    An empty configured token never authenticates anybody.

    Returns:
        One of the ``AuthStatus`` values
    """
    if not provided:
        return AuthStatus.NOT_PROVIDED
    if not expected:
        return AuthStatus.INVALID
    if constant_time_compare(provided, expected):
        return AuthStatus.VALID
    return AuthStatus.INVALID


def extract_client_id(headers: Mapping[str, str], peer_host: Optional[str],
                      trusted_hops: int = 0) -> str:
    """
    Client identifier for rate limiting.

    Keys on the socket peer. ``x-forwarded-for`` is honoured only when
    ``trusted_hops`` reverse proxies sit in front of the service: the
    address list is read right to left starting at the peer, and the first
    hop past the trusted proxies identifies the client.

    Args:
        headers: Request headers
        peer_host: Socket peer address
        trusted_hops: Number of trusted reverse proxies (0 = none)
    """
    addresses = [peer_host] if peer_host else []
    if trusted_hops > 0:
        forwarded = headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        addresses.extend(reversed(hops))
    if not addresses:
        return "anonymous"
    return f"ip:{addresses[min(trusted_hops, len(addresses) - 1)]}"
