"""Shared-password utilities for the signaling connection handshake.

Every client presents the server's shared password in its ``register`` frame.
The server compares it in constant time and drops the socket on mismatch.

The password is distributed out-of-band (config file, env var) and is never
echoed back by the server.
"""

import base64
import hmac
import secrets
from typing import Optional


def generate_secret() -> str:
    """Generate a random shared password.

    Returns:
        A 256-bit (32-byte) random secret, URL-safe base64-encoded.
        The result is 43 characters (no padding).

    Example:
        >>> secret = generate_secret()
        >>> len(secret)
        43
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode()


def verify_shared_secret(expected: Optional[str], received: Optional[str]) -> bool:
    """Check a presented password against the server's shared password.

    Uses constant-time comparison to prevent timing attacks. An empty
    expected password matches nothing.

    Args:
        expected: The server's configured password.
        received: The password presented by the client.

    Returns:
        True if the client may connect, False otherwise.

    Example:
        >>> verify_shared_secret("x", "x")
        True
        >>> verify_shared_secret("x", "y")
        False
        >>> verify_shared_secret(None, None)
        False
    """
    if not expected or not isinstance(received, str):
        return False
    return hmac.compare_digest(expected.encode(), received.encode())
