"""WebSocket upgrade authorization (allowed origin + shared-secret token)."""

import hmac
from urllib.parse import parse_qs, urlsplit

from cdp_relay.errors import AuthorizationError


def token_from_path(path: str) -> str | None:
    """Extract the ``token`` query parameter from a request path."""
    values = parse_qs(urlsplit(path).query).get("token")
    return values[0] if values else None


def _secrets_match(expected: str, provided: str | None) -> bool:
    if provided is None:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def authorize_upgrade(
    origin: str | None,
    path: str,
    allowed_origin: str = "",
    shared_secret: str = "",
) -> None:
    """
    Check an upgrade request against the configured origin and secret.

    Empty ``allowed_origin`` / ``shared_secret`` disable the respective check.

    Raises:
        AuthorizationError: if either configured check fails
    """
    if allowed_origin and origin != allowed_origin:
        raise AuthorizationError(f"origin not allowed: {origin}")
    if shared_secret and not _secrets_match(shared_secret, token_from_path(path)):
        raise AuthorizationError("bad or missing token")
