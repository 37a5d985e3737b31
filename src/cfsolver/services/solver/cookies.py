"""
Domain-scoped cookie store fed by solver results.

The solving service hands cookies back in three shapes, all normalized to
the same jar state:
    {"cf_clearance": "abc"}                                 flat mapping -> request host
    [{"name": "cf_clearance", "value": "abc", "domain": ".example.com"}]
    "cf_clearance=abc; Domain=.example.com; Path=/"         raw Set-Cookie value

Jar layout:
    normalized domain (no leading ".", lower-case) -> {cookie name -> value}
"""

import logging
import re
import threading
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from http.cookiejar import http2time
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# RFC 6265 token (cookie name)
_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

# RFC 6265 cookie-value: cookie-octets, optionally wrapped in double quotes
_OCTETS = r"[\x21\x23-\x2B\x2D-\x3A\x3C-\x5B\x5D-\x7E]*"
_COOKIE_VALUE_RE = re.compile(rf'^(?:"{_OCTETS}"|{_OCTETS})$')


@dataclass
class ParsedCookie:
    """A single cookie parsed out of a Set-Cookie header value."""

    name: str
    value: str
    domain: str | None = None
    path: str | None = None
    expires: float | None = None
    max_age: int | None = None


def normalize_domain(domain: str) -> str:
    """Strip the leading dot and lower-case a cookie domain."""
    return domain.strip().lstrip(".").lower()


def domain_matches(host: str, domain: str) -> bool:
    """True if ``host`` equals ``domain`` or is a subdomain of it."""
    return host == domain or host.endswith("." + domain)


def parse_set_cookie(header: str, strict: bool = False) -> ParsedCookie | None:
    """Parse one Set-Cookie value.

    Returns None if the name is not a token or the value is not
    cookie-octets. An unparsable Expires or Max-Age is ignored.

    With ``strict`` the whole cookie is rejected instead, as is any attribute
    name that is not a token or any non-Expires attribute value containing a
    comma. split_set_cookie() relies on this to tell a comma inside Expires
    apart from a comma between two cookies.
    """
    parts = header.split(";")
    pair = parts[0].strip()
    if "=" not in pair:
        return None

    name, _, value = pair.partition("=")
    name = name.strip()
    value = value.strip()
    if not _TOKEN_RE.match(name) or not _COOKIE_VALUE_RE.match(value):
        return None
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        value = value[1:-1]

    cookie = ParsedCookie(name=name, value=value)
    for attr in parts[1:]:
        attr = attr.strip()
        if not attr:
            continue
        key, _, attr_value = attr.partition("=")
        key = key.strip().lower()
        attr_value = attr_value.strip()
        # only Expires may legitimately carry a comma
        if strict and (not _TOKEN_RE.match(key) or (key != "expires" and "," in attr_value)):
            return None

        if key == "expires":
            expires = http2time(attr_value)
            if expires is not None:
                cookie.expires = expires
            elif strict:
                return None
            else:
                logger.debug(f"Ignoring unparsable Expires on cookie {name}")
        elif key == "max-age":
            try:
                cookie.max_age = int(attr_value)
            except ValueError:
                if strict:
                    return None
                logger.debug(f"Ignoring unparsable Max-Age on cookie {name}")
        elif key == "domain":
            cookie.domain = normalize_domain(attr_value) or None
        elif key == "path":
            cookie.path = attr_value or None

    return cookie


def split_set_cookie(header_value: str) -> list[str]:
    """Split a possibly multi-cookie Set-Cookie value into single cookies.

    Policy:
    - newline-joined: split on newlines
    - parses as one cookie: single
    - otherwise accumulate comma-separated tokens until the accumulated
      text parses, emit it and start over (resolves the Expires comma)
    """
    if "\n" in header_value:
        return [line.strip() for line in header_value.splitlines() if line.strip()]

    if parse_set_cookie(header_value, strict=True) is not None:
        return [header_value]

    if "," not in header_value:
        return [header_value]

    parts: list[str] = []
    current = ""
    for token in header_value.split(","):
        current = f"{current},{token}" if current else token
        candidate = current.strip()
        if parse_set_cookie(candidate, strict=True) is not None:
            parts.append(candidate)
            current = ""
    if current.strip():
        parts.append(current.strip())
    return parts


def _host_of(url: str) -> str | None:
    host = urlparse(url).hostname
    return host.lower() if host else None


class _CookieBucket:
    """Cookies of a single domain, guarded by their own lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cookies: dict[str, str] = {}

    def set(self, name: str, value: str) -> None:
        with self._lock:
            self._cookies[name] = value

    def update(self, cookies: Mapping[str, str]) -> None:
        with self._lock:
            self._cookies.update(cookies)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._cookies)

    def __len__(self) -> int:
        return len(self._cookies)


class CookieJar:
    """Thread-safe mapping of normalized domain -> cookie name -> value.

    Usage:
        jar = CookieJar()
        jar.store({"cf_clearance": "abc"}, "https://example.com/page")
        jar.cookies_for_host("sub.example.com")   # {"cf_clearance": "abc"}
    """

    def __init__(self) -> None:
        self._buckets: dict[str, _CookieBucket] = {}
        self._lock = threading.Lock()

    def _bucket(self, domain: str) -> _CookieBucket:
        with self._lock:
            bucket = self._buckets.get(domain)
            if bucket is None:
                bucket = self._buckets[domain] = _CookieBucket()
            return bucket

    def set(self, domain: str, name: str, value: str) -> None:
        """Store one cookie under a domain (normalized before storage)."""
        normalized = normalize_domain(domain)
        if not normalized or not name:
            return
        self._bucket(normalized).set(name, value)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def store(self, cookies: Any, url: str) -> int:
        """Ingest cookies in any supported shape for a request URL.

        Args:
            cookies: name->value mapping, list of cookie descriptors, or a
                raw Set-Cookie header value
            url: URL the cookies were obtained for (default domain)

        Returns:
            Number of cookies stored
        """
        if cookies is None:
            return 0
        if isinstance(cookies, Mapping):
            return self.store_mapping(cookies, url)
        if isinstance(cookies, str):
            return self.store_set_cookie(cookies, url)
        if isinstance(cookies, Sequence):
            return self.store_list(cookies, url)
        logger.warning(f"Ignoring cookies of unsupported type {type(cookies).__name__}")
        return 0

    def store_mapping(self, cookies: Mapping[str, Any], url: str) -> int:
        """All entries go to the URL's host."""
        host = _host_of(url)
        if not host:
            return 0
        values = {str(k): str(v) for k, v in cookies.items() if k and v is not None}
        if values:
            self._bucket(normalize_domain(host)).update(values)
        return len(values)

    def store_list(self, cookies: Sequence[Any], url: str) -> int:
        """Each descriptor carries name, value and an optional domain."""
        host = _host_of(url)
        stored = 0
        for item in cookies:
            if not isinstance(item, Mapping) or "name" not in item or "value" not in item:
                continue
            domain = item.get("domain") or host
            if not domain:
                continue
            self.set(str(domain), str(item["name"]), str(item["value"]))
            stored += 1
        return stored

    def store_set_cookie(self, header_value: str, url: str) -> int:
        """Ingest a raw (possibly multi-cookie) Set-Cookie value."""
        host = _host_of(url)
        if not host or not header_value:
            return 0

        stored = 0
        for raw in split_set_cookie(header_value):
            cookie = parse_set_cookie(raw)
            if cookie is None:
                logger.debug("Skipping unparsable Set-Cookie fragment")
                continue
            domain = cookie.domain or host
            if not domain_matches(host, domain):
                logger.debug(f"Skipping cookie {cookie.name}: domain {domain} does not match {host}")
                continue
            self.set(domain, cookie.name, cookie.value)
            stored += 1
        return stored

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def cookies_for_host(self, host: str) -> dict[str, str]:
        """Union of the exact bucket and every parent-domain bucket of ``host``."""
        result: dict[str, str] = {}
        if not host:
            return result
        host = host.lower()
        with self._lock:
            buckets = sorted(self._buckets.items(), key=lambda item: len(item[0]))
        # parent domains first so the most specific bucket wins on name clashes
        for domain, bucket in buckets:
            if domain_matches(host, domain):
                result.update(bucket.snapshot())
        return result

    def cookie_header(self, host: str) -> str | None:
        """Build a single Cookie header value for ``host``, or None if empty."""
        cookies = self.cookies_for_host(host)
        if not cookies:
            return None
        return "; ".join(f"{name}={value}" for name, value in cookies.items())

    def get(self, domain: str) -> dict[str, str]:
        """Cookies stored for exactly ``domain``."""
        with self._lock:
            bucket = self._buckets.get(normalize_domain(domain))
        return bucket.snapshot() if bucket else {}

    def domains(self) -> list[str]:
        with self._lock:
            return list(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._buckets.values())

    def __iter__(self) -> Iterator[tuple[str, str, str]]:
        """Iterate (domain, name, value) triples."""
        with self._lock:
            buckets = list(self._buckets.items())
        for domain, bucket in buckets:
            for name, value in bucket.snapshot().items():
                yield domain, name, value
