"""CFSolver Custom Exceptions.

Hierarchy:
    CFSolverException (base)
    ├── CFSolverConnectionError  - target site, remote API or helper process unreachable
    ├── CFSolverChallengeError   - remote solve failed or returned no usable solution
    ├── CFSolverTimeoutError     - polling deadline elapsed without a terminal status
    └── CFSolverAPIError         - malformed or semantically invalid API response
"""

from typing import Any
from urllib.parse import urlparse


class CFSolverException(Exception):
    """Base exception for all CFSolver errors."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.url = url
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.url:
            parts.append(f"url={self.url}")
        shown = {k: v for k, v in self.details.items() if v is not None}
        if shown:
            details_str = ", ".join(f"{k}={v}" for k, v in shown.items())
            parts.append(f"[{details_str}]")
        return " | ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for logging/reporting."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "url": self.url,
            "details": self.details,
        }


class CFSolverConnectionError(CFSolverException):
    """Network failure reaching the target site, the API or a helper process.

    Also raised when a helper process exits during startup; ``output``
    then holds whatever the process wrote before dying.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        output: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, url, {"exit_code": exit_code})
        self.output = output
        self.exit_code = exit_code


class CFSolverChallengeError(CFSolverException):
    """The solving service reported a failure or returned no usable solution."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message, url, {"task_id": task_id})
        self.task_id = task_id


class CFSolverTimeoutError(CFSolverException):
    """A polling deadline elapsed without a terminal remote status."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        task_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(message, url, {"task_id": task_id, "timeout_seconds": timeout_seconds})
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class CFSolverAPIError(CFSolverException):
    """Malformed or semantically invalid API response (or an invalid URL)."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        error_id: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, url, {"error_id": error_id, "status_code": status_code})
        self.error_id = error_id
        self.status_code = status_code


def mask_proxy(proxy_url: str | None) -> str | None:
    """Mask credentials in a proxy URL for logs and error details."""
    if not proxy_url:
        return None
    try:
        parsed = urlparse(proxy_url)
        if not parsed.username and not parsed.password:
            return proxy_url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        return parsed._replace(netloc=f"***:***@{host}").geturl()
    except ValueError:
        return "[invalid proxy url]"
