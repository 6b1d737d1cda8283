"""Cookie handling for the booking platform.

Only a fixed set of cookies matters to the platform: the two AWS load
balancer cookies, the PHP session and the auth cookie. Everything else in
Set-Cookie is dropped so it never reaches the session store.
"""

from __future__ import annotations

import httpx

from prebooker.models import AuthCookie

REQUIRED_COOKIES = ("AWSALB", "AWSALBCORS", "PHPSESSID", "amhrdrauth")


def parse_set_cookie(header: str) -> AuthCookie | None:
    """Parse one Set-Cookie header value into a name/value pair."""
    name_value = header.split(";", 1)[0].strip()
    if "=" not in name_value:
        return None
    name, _, value = name_value.partition("=")
    name, value = name.strip(), value.strip()
    if not name or not value:
        return None
    return AuthCookie(name=name, value=value)


def extract_from_response(response: httpx.Response) -> list[AuthCookie]:
    """Required cookies set by a platform response, in header order."""
    cookies: list[AuthCookie] = []
    for header in response.headers.get_list("set-cookie"):
        cookie = parse_set_cookie(header)
        if cookie and cookie.name in REQUIRED_COOKIES:
            cookies.append(cookie)
    return cookies


def format_for_request(cookies: list[AuthCookie]) -> str:
    return "; ".join(f"{c.name}={c.value}" for c in cookies)


def merge_cookies(existing: list[AuthCookie], updates: list[AuthCookie]) -> list[AuthCookie]:
    """Overlay updates on existing cookies by name, keeping existing order."""
    merged = {c.name: c for c in existing}
    for cookie in updates:
        merged[cookie.name] = cookie
    return list(merged.values())


def missing_cookies(cookies: list[AuthCookie]) -> list[str]:
    names = {c.name for c in cookies}
    return [name for name in REQUIRED_COOKIES if name not in names]
