"""Target-site dispatch through curl_cffi."""

import logging
import time
from typing import Any

from curl_cffi import CurlError
from curl_cffi import requests as curl_requests

from .exceptions import CFSolverConnectionError, mask_proxy
from .response import Response

logger = logging.getLogger(__name__)


class HttpTransport:
    """
    Sends one request per call with a fresh curl handle.

    No cookie jar is kept here; cookies are attached explicitly by the
    solver so concurrent callers never leak state into each other.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        proxy: str | None = None,
        impersonate: str | None = None,
        verify: bool = True,
    ) -> None:
        self.timeout = timeout
        self.proxy = proxy
        self.impersonate = impersonate
        self.verify = verify

    def __repr__(self) -> str:
        return f"HttpTransport(proxy={mask_proxy(self.proxy)}, impersonate={self.impersonate}, verify={self.verify})"

    def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str | bytes | None = None,
    ) -> Response:
        kwargs: dict[str, Any] = {
            "headers": headers or {},
            "timeout": self.timeout,
            "allow_redirects": True,
            "verify": self.verify,
        }
        if body is not None:
            kwargs["data"] = body
        if self.proxy:
            kwargs["proxy"] = self.proxy
        if self.impersonate:
            kwargs["impersonate"] = self.impersonate

        start = time.monotonic()
        try:
            response = curl_requests.request(method, url, **kwargs)
        except CurlError as e:
            raise CFSolverConnectionError(f"Request failed: {e}", url=url) from e

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug(f"{method} {url} -> {response.status_code} ({elapsed_ms:.0f}ms)")
        return Response(
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
            url=str(response.url),
        )
