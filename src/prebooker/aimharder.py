"""Async AimHarder client: token update and booking fire.

A pure transport adapter. Responses are decoded once, here, into tagged
results (TokenRefreshed | TokenLogout | TokenRefreshError and
BookingConfirmed | BookingLogout | BookingRejected); nothing is persisted.

Performance notes for the fire path:
- HTTP/2 client reused for refresh and fire within one invocation
- orjson for the booking response
- Tight timeouts (fire_timeout, default 3s) so a hung request cannot eat
  the invocation budget
"""

from __future__ import annotations

import logging

import httpx
import orjson

from prebooker import cookies as cookie_utils
from prebooker.errors import TransientNetworkError
from prebooker.models import (
    AuthCookie,
    BookingConfirmed,
    BookingLogout,
    BookingOutcome,
    BookingRejected,
    BookingRequest,
    TokenLogout,
    TokenRefreshed,
    TokenRefreshError,
    TokenUpdateResult,
)

logger = logging.getLogger(__name__)

TOKEN_UPDATE_URL = "https://aimharder.com/api/tokenUpdate"
BOOK_PATH = "/api/book"

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
)

# bookState values returned by /api/book
BOOK_STATE_BOOKED = 1
BOOK_STATE_MAX_BOOKINGS = -8
BOOK_STATE_EARLY_BOOKING = -12

_ERROR_CODES = {
    BOOK_STATE_EARLY_BOOKING: "early_booking",
    BOOK_STATE_MAX_BOOKINGS: "max_bookings_reached",
}


def decode_token_update(
    status_code: int, content: bytes, new_cookies: list[AuthCookie], old_cookies: list[AuthCookie]
) -> TokenUpdateResult:
    """Turn a /api/tokenUpdate response into a tagged result."""
    if status_code >= 400:
        return TokenRefreshError(f"Server error: {status_code}")
    try:
        data = orjson.loads(content)
    except orjson.JSONDecodeError:
        return TokenRefreshError("Invalid JSON from token update")
    if not isinstance(data, dict):
        return TokenRefreshError("Unexpected token update response format")

    if data.get("logout") is not None:
        return TokenLogout()

    new_token = data.get("newToken")
    if not new_token:
        return TokenRefreshError("No newToken in response")

    merged = cookie_utils.merge_cookies(old_cookies, new_cookies) if new_cookies else old_cookies
    return TokenRefreshed(new_token=new_token, cookies=merged)


def decode_booking(content: bytes) -> BookingOutcome:
    """Turn a /api/book response body into a tagged result."""
    try:
        data = orjson.loads(content)
    except orjson.JSONDecodeError as e:
        raise TransientNetworkError(f"Invalid JSON from booking endpoint: {e}") from e
    if not isinstance(data, dict):
        raise TransientNetworkError("Unexpected booking response format")

    if data.get("logout") == 1:
        return BookingLogout(raw=data)

    book_state = data.get("bookState")
    message = data.get("errorMssg") or ""
    if book_state == BOOK_STATE_BOOKED:
        booking_id = data.get("id")
        return BookingConfirmed(
            booking_id=str(booking_id) if booking_id is not None else None,
            book_state=book_state,
            message=message or "Booking created successfully",
        )

    return BookingRejected(
        message=message or "Booking failed",
        book_state=book_state,
        error_code=_ERROR_CODES.get(book_state, "booking_failed"),
        message_lang=data.get("errorMssgLang"),
    )


class AimharderClient:
    """
    Async HTTP client for the AimHarder platform.

    Use as an async context manager so the refresh and the fire share one
    connection pool:

        async with AimharderClient(fire_timeout=3.0) as client:
            result = await client.update_token(token, fingerprint, cookies)
            outcome = await client.create_booking("mybox", booking, cookies)
    """

    def __init__(
        self,
        fire_timeout: float = 3.0,
        refresh_timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._fire_timeout = fire_timeout
        self._refresh_timeout = refresh_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> AimharderClient:
        kwargs: dict = {
            "http2": True,
            "headers": {"User-Agent": USER_AGENT, "Accept": "*/*"},
            "timeout": httpx.Timeout(self._fire_timeout, connect=2.0),
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        self._client = httpx.AsyncClient(**kwargs)
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def update_token(
        self, token: str, fingerprint: str, cookies: list[AuthCookie]
    ) -> TokenUpdateResult:
        """POST /api/tokenUpdate: exchange an aging token for a fresh one."""
        assert self._client is not None
        try:
            resp = await self._client.post(
                TOKEN_UPDATE_URL,
                data={"token": token, "ciclo": "1", "fingerprint": fingerprint},
                headers={"Cookie": cookie_utils.format_for_request(cookies)},
                timeout=httpx.Timeout(self._refresh_timeout, connect=2.0),
            )
        except httpx.HTTPError as e:
            logger.warning("Token update request failed: %s", e)
            return TokenRefreshError(f"Token update failed: {e}")

        return decode_token_update(
            resp.status_code,
            resp.content,
            cookie_utils.extract_from_response(resp),
            cookies,
        )

    async def create_booking(
        self, box_subdomain: str, booking: BookingRequest, cookies: list[AuthCookie]
    ) -> BookingOutcome:
        """POST /api/book on the box's subdomain. Raises TransientNetworkError
        on network failures and non-2xx responses."""
        assert self._client is not None
        base_url = f"https://{box_subdomain}.aimharder.com"
        headers = {
            "X-Requested-With": "XMLHttpRequest",
            "Referer": f"{base_url}/",
            "Origin": base_url,
        }
        if cookies:
            headers["Cookie"] = cookie_utils.format_for_request(cookies)

        try:
            resp = await self._client.post(
                f"{base_url}{BOOK_PATH}", data=booking.as_form(), headers=headers
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Booking request timed out: {e}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransientNetworkError(f"Booking request failed: {e}") from e

        if resp.status_code >= 400:
            raise TransientNetworkError(
                f"HTTP {resp.status_code} from booking endpoint: {resp.text[:200]}"
            )
        return decode_booking(resp.content)
