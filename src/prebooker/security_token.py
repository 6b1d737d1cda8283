"""HMAC tokens binding a broker trigger to one (intent, execute_at) pair.

Verifying an HMAC takes ~1ms, far cheaper than the broker's JWT signature
check, which matters on the path that has to fire at an exact instant.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime

from prebooker.errors import ConfigError


def _to_ms(execute_at: datetime | int) -> int:
    if isinstance(execute_at, datetime):
        return int(execute_at.timestamp() * 1000)
    return int(execute_at)


def generate_token(secret: str, intent_id: str, execute_at: datetime | int) -> str:
    """Return the hex HMAC-SHA256 of "{intent_id}:{execute_at_ms}"."""
    if not secret:
        raise ConfigError("PREBOOKING_SECRET is required to sign triggers")
    message = f"{intent_id}:{_to_ms(execute_at)}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_token(
    secret: str, token: str, intent_id: str, execute_at: datetime | int
) -> bool:
    """Constant-time check of a token against (intent_id, execute_at)."""
    if not token:
        return False
    expected = generate_token(secret, intent_id, execute_at)
    return hmac.compare_digest(token.encode(), expected.encode())
