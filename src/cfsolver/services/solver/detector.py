"""Cloudflare challenge detection.

A response is treated as a challenge only when all three signals agree:
- HTTP status 403 or 503
- a ``Server`` header containing "cloudflare" (case-insensitive)
- one of the interstitial page markers in the body (case-sensitive literals)
"""

from collections.abc import Mapping

from .response import Response

CHALLENGE_STATUS_CODES = frozenset({403, 503})

CHALLENGE_SERVER_TOKEN = "cloudflare"

# Literal substrings of the interstitial page
CHALLENGE_MARKERS = (
    "cf-turnstile",
    "cf-challenge",
    "Just a moment",
)


def _server_header(headers: Mapping[str, str] | None) -> str | None:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == "server":
            return value
    return None


def is_challenge(status_code: int, server: str | None, body: str | None) -> bool:
    """Check whether a status/server/body triple is a Cloudflare interstitial.

    Args:
        status_code: HTTP response status code
        server: Value of the Server header (None if absent)
        body: Response body text

    Returns:
        True only if every condition matches
    """
    if status_code not in CHALLENGE_STATUS_CODES:
        return False
    if server is None or CHALLENGE_SERVER_TOKEN not in server.lower():
        return False
    if not body:
        return False
    return any(marker in body for marker in CHALLENGE_MARKERS)


class ChallengeDetector:
    """Pure predicate over a Response."""

    def detect(self, response: Response | None) -> bool:
        if response is None:
            return False
        return is_challenge(response.status_code, _server_header(response.headers), response.text)

    __call__ = detect
