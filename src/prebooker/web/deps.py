"""FastAPI dependencies: service bundle and route guards.

- Cron routes: `Authorization: Bearer <CRON_SECRET>`
- Client routes: `X-Api-Key: <PREBOOKER_API_KEY>`
- The broker webhook authenticates through the payload's security token,
  checked by the executor.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from prebooker.services import Services

logger = logging.getLogger(__name__)

http_bearer = HTTPBearer(auto_error=False)
_api_key_header = APIKeyHeader(name="X-Api-Key", auto_error=False)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(503, "Service not configured")
    return services


def _matches(provided: str | None, expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided.encode(), expected.encode())


async def require_cron(
    creds: HTTPAuthorizationCredentials | None = Depends(http_bearer),
    services: Services = Depends(get_services),
) -> None:
    """Verify the bearer token matches CRON_SECRET."""
    expected = services.settings.cron_secret
    if not expected:
        raise HTTPException(503, "Cron not configured (set CRON_SECRET)")
    if not creds or not _matches(creds.credentials, expected):
        logger.warning("Rejected cron call with invalid credentials")
        raise HTTPException(401, "Unauthorized")


async def require_api_key(
    key: str | None = Depends(_api_key_header),
    services: Services = Depends(get_services),
) -> None:
    """Verify the X-Api-Key header matches PREBOOKER_API_KEY."""
    expected = services.settings.api_key
    if not expected:
        raise HTTPException(503, "Client API not configured (set PREBOOKER_API_KEY)")
    if not _matches(key, expected):
        raise HTTPException(401, "Invalid API key")
