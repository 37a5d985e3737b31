"""
CloudflareSolver - request orchestration with automatic challenge solving

Request flow (solve enabled, on-demand):
    dispatch → challenge? → solve → retry → still challenge? → MaskTunnel → retry

Pre-solve mode (on_challenge=False) solves before every request; a failed
pre-solve is logged and the request goes out anyway with whatever session
state exists.

Session state shared by all requests of one solver:
- CookieJar         clearance cookies per domain
- ChallengeState    captured user-agent and extra headers

Both are written only by the solve step, which is serialized, so the retry
that follows a solve always sees its result.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from ...schemas.session import SessionConfig
from ...schemas.task import TaskDescriptor, TaskSolution, TaskType
from ..tools.linksocks import LinkSocksSupervisor
from ..tools.masktunnel import MaskTunnelSupervisor
from ..tools.provisioner import ToolProvisioner
from .api_client import RemoteTaskClient
from .cookies import CookieJar
from .detector import ChallengeDetector
from .exceptions import CFSolverAPIError, CFSolverChallengeError, CFSolverException
from .response import Response
from .transport import HttpTransport

if TYPE_CHECKING:
    from ...core.config import Settings

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json; charset=utf-8"

# Handled through the cookie jar / user_agent, never replayed verbatim
_UNREPLAYED_HEADERS = frozenset({"cookie", "user-agent", "set-cookie"})


@dataclass
class ChallengeState:
    """Artifacts captured from the last successful challenge solve."""

    solved: bool = False
    user_agent: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any existing key that differs only in case."""
    lowered = name.lower()
    for key in [k for k in headers if k.lower() == lowered]:
        del headers[key]
    headers[name] = value


def _has_header(headers: dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(k.lower() == lowered for k in headers)


def encode_body(body: Any) -> str | bytes | None:
    """str/bytes go out as-is, anything else is JSON-encoded."""
    if body is None:
        return None
    if isinstance(body, (str, bytes)):
        return body
    return json.dumps(body)


class CloudflareSolver:
    """HTTP client that solves Cloudflare challenges through the CloudFlyer API.

    Usage:
        with CloudflareSolver("your-api-key") as solver:
            response = solver.get("https://protected-site.com")
            token = solver.solve_turnstile("https://site.com/login", site_key="0x4AAA...")

    Explicit config:
        solver = CloudflareSolver(config=SessionConfig(api_key="...", use_masktunnel=True))

    Environment (.env / CLOUDFLYER_* variables):
        solver = CloudflareSolver.from_settings()
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        config: SessionConfig | None = None,
        api_client: RemoteTaskClient | None = None,
        transport: HttpTransport | None = None,
        provisioner: ToolProvisioner | None = None,
        **options: Any,
    ) -> None:
        """Initialize the solver and (lazily started) helper supervisors.

        Args:
            api_key: CloudFlyer API key (ignored when ``config`` is given)
            config: Complete session configuration
            api_client: Pre-built API client (tests, shared clients)
            transport: Transport for direct dispatch
            provisioner: Tool provisioner shared by both helpers
            **options: Any other SessionConfig field
        """
        if config is None:
            config = SessionConfig(api_key=api_key, **options)
        elif api_key is not None or options:
            raise TypeError("Pass either config or api_key/options, not both")
        self.config = config

        self.cookies = CookieJar()
        self.state = ChallengeState()
        self.detector = ChallengeDetector()
        self._solve_lock = threading.Lock()
        self._closed = False

        tools_config = config.tools
        if tools_config.proxy is None and config.effective_api_proxy:
            tools_config = tools_config.model_copy(update={"proxy": config.effective_api_proxy})
        self.provisioner = provisioner or ToolProvisioner(tools_config)

        self.api = api_client or RemoteTaskClient.from_config(config)

        self.linksocks: LinkSocksSupervisor | None = None
        if config.use_linksocks:
            self.linksocks = LinkSocksSupervisor(
                self.provisioner,
                self.api.get_linksocks_config,
                upstream_proxy=config.proxy,
            )
            self.api.attach_network_provider(self.linksocks)

        self.masktunnel: MaskTunnelSupervisor | None = None
        if config.use_masktunnel:
            self.masktunnel = MaskTunnelSupervisor(
                self.provisioner,
                addr=config.masktunnel_addr,
                port=config.masktunnel_port,
                upstream_proxy=config.proxy,
            )

        self._direct = transport or HttpTransport(
            timeout=config.timeout,
            proxy=config.proxy,
            impersonate=config.impersonate,
        )
        self._masked: HttpTransport | None = None

        logger.info(
            f"CloudflareSolver created: api_base={config.api_base}, solve={config.solve}, "
            f"on_challenge={config.on_challenge}, polling={config.polling_mode.value}, "
            f"linksocks={config.use_linksocks}, masktunnel={config.use_masktunnel}"
        )

    @classmethod
    def from_settings(cls, settings: "Settings | None" = None, **overrides: Any) -> "CloudflareSolver":
        """Build a solver from CLOUDFLYER_* settings, with field overrides."""
        if settings is None:
            from ...core.config import settings as default_settings

            settings = default_settings
        return cls(config=SessionConfig.from_settings(settings, **overrides))

    @property
    def user_agent(self) -> str | None:
        return self.state.user_agent

    @property
    def challenge_solved(self) -> bool:
        return self.state.solved

    # ========================================================================
    # Request API
    # ========================================================================

    def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Response:
        """Make an HTTP request with automatic challenge bypass.

        Args:
            method: HTTP method (case-insensitive, passed through upper-cased)
            url: Absolute http(s) URL
            body: str/bytes sent as-is, any other value JSON-encoded
            headers: Caller headers, applied last (caller wins)

        Raises:
            CFSolverAPIError: invalid URL, or the API rejected the task
            CFSolverConnectionError: target site or API unreachable
            CFSolverChallengeError / CFSolverTimeoutError: on-demand solve failed
            CFSolverException: the solver has been closed
        """
        self._ensure_open()
        method = method.upper()
        self._host_of(url)

        if not self.config.solve:
            return self._dispatch(method, url, body, headers)

        if not self.config.on_challenge:
            try:
                self.solve_challenge(url)
            except CFSolverException as e:
                logger.warning(f"Pre-solve failed, continuing without it: {e}")
            return self._dispatch(method, url, body, headers)

        response = self._dispatch(method, url, body, headers)
        if not self.detector.detect(response):
            return response

        logger.info(f"Cloudflare challenge detected on {url}, solving...")
        self.solve_challenge(url)
        response = self._dispatch(method, url, body, headers)

        if self.detector.detect(response):
            logger.info("Challenge persists after retry, escalating to MaskTunnel...")
            self._ensure_masktunnel_started()
            response = self._dispatch(method, url, body, headers)

        return response

    def get(self, url: str, headers: dict[str, str] | None = None) -> Response:
        return self.request("GET", url, headers=headers)

    def post(self, url: str, body: Any = None, headers: dict[str, str] | None = None) -> Response:
        return self.request("POST", url, body, headers)

    def put(self, url: str, body: Any = None, headers: dict[str, str] | None = None) -> Response:
        return self.request("PUT", url, body, headers)

    def delete(self, url: str, headers: dict[str, str] | None = None) -> Response:
        return self.request("DELETE", url, headers=headers)

    def patch(self, url: str, body: Any = None, headers: dict[str, str] | None = None) -> Response:
        return self.request("PATCH", url, body, headers)

    def head(self, url: str, headers: dict[str, str] | None = None) -> Response:
        return self.request("HEAD", url, headers=headers)

    # ========================================================================
    # Solving
    # ========================================================================

    def solve_challenge(self, url: str) -> TaskSolution:
        """Solve the Cloudflare challenge for ``url`` and merge the solution."""
        self._ensure_open()
        host = self._host_of(url)

        with self._solve_lock:
            logger.info(f"Starting challenge solve: {url}")
            result = self.api.solve(
                TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=url),
                self.config.solve_timeout,
            )
            solution = result.solution
            self._merge_solution(solution, url)
            self.state.solved = True

            # align the TLS fingerprint of the retry with the solving browser
            self._ensure_masktunnel_started()

            host_cookies = self.cookies.cookies_for_host(host)
            logger.info(
                f"Challenge solved successfully, cookies={len(host_cookies)}, "
                f"userAgent={self.state.user_agent is not None}, "
                f"cf_clearance={'cf_clearance' in host_cookies}, "
                f"cookieKeys={sorted(host_cookies)}, headerKeys={sorted(self.state.headers)}"
            )
            return solution

    def solve_turnstile(self, url: str, site_key: str) -> str:
        """Solve a Turnstile widget and return its token.

        Raises:
            CFSolverChallengeError: the task failed or returned no token
        """
        self._ensure_open()
        self._host_of(url)
        logger.info(f"Starting Turnstile solve: {url}")
        result = self.api.solve(
            TaskDescriptor(type=TaskType.TURNSTILE, website_url=url, website_key=site_key),
            self.config.solve_timeout,
        )
        token = result.solution.token
        if not token:
            raise CFSolverChallengeError("Turnstile solve failed: no token returned", url=url)
        logger.info("Turnstile solved successfully")
        return token

    def get_balance(self) -> float:
        self._ensure_open()
        return self.api.get_balance()

    def reset_tls_sessions(self) -> bool:
        """Clear MaskTunnel's TLS session cache (False if not enabled/running)."""
        if self.masktunnel is None:
            logger.warning("MaskTunnel is not enabled")
            return False
        return self.masktunnel.reset_sessions()

    def _merge_solution(self, solution: TaskSolution, url: str) -> None:
        if solution.cookies is not None:
            self.cookies.store(solution.cookies, url)

        user_agent = solution.user_agent
        if isinstance(solution.headers, dict):
            headers = {str(k): str(v) for k, v in solution.headers.items() if v is not None}
            if not user_agent:
                user_agent = next((v for k, v in headers.items() if k.lower() == "user-agent"), None)
            for key, value in headers.items():
                if key.lower() == "set-cookie":
                    self.cookies.store_set_cookie(value, url)
            self.state.headers = {k: v for k, v in headers.items() if k.lower() not in _UNREPLAYED_HEADERS}

        if user_agent:
            self.state.user_agent = user_agent

    def _ensure_masktunnel_started(self) -> bool:
        if self.masktunnel is None:
            return False
        self.masktunnel.start()
        if self._masked is None:
            self._masked = HttpTransport(
                timeout=self.config.timeout,
                proxy=self.masktunnel.proxy_url,
                verify=False,
            )
            logger.info(f"MaskTunnel transport ready on {self.masktunnel.proxy_url}")
        return True

    # ========================================================================
    # Dispatch
    # ========================================================================

    def _ensure_open(self) -> None:
        if self._closed:
            raise CFSolverException("CloudflareSolver is closed")

    @staticmethod
    def _host_of(url: str) -> str:
        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise CFSolverAPIError(f"Invalid URL: {url}", url=url) from e
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise CFSolverAPIError(f"Invalid URL: {url}", url=url)
        return parsed.hostname.lower()

    def _build_headers(self, host: str, headers: dict[str, str] | None, has_body: bool) -> dict[str, str]:
        built: dict[str, str] = {}

        cookie_header = self.cookies.cookie_header(host)
        if cookie_header:
            built["Cookie"] = cookie_header
        if self.state.user_agent:
            built["User-Agent"] = self.state.user_agent
        for key, value in self.state.headers.items():
            _set_header(built, key, value)

        for key, value in (headers or {}).items():
            _set_header(built, key, value)

        if has_body and not _has_header(built, "Content-Type"):
            built["Content-Type"] = JSON_CONTENT_TYPE
        return built

    def _transport(self) -> HttpTransport:
        if self._masked is not None and self.masktunnel is not None and self.masktunnel.is_running:
            return self._masked
        return self._direct

    def _dispatch(self, method: str, url: str, body: Any, headers: dict[str, str] | None) -> Response:
        payload = encode_body(body)
        request_headers = self._build_headers(self._host_of(url), headers, payload is not None)
        return self._transport().send(method, url, request_headers, payload)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def close(self) -> None:
        """Stop helper processes and release HTTP clients. Never raises."""
        if self._closed:
            return
        self._closed = True

        for supervisor in (self.masktunnel, self.linksocks):
            if supervisor is None:
                continue
            try:
                supervisor.stop()
            except Exception as e:
                logger.warning(f"Failed to stop {supervisor.tool_name}: {e}")

        for closer in (self.api.close, self.provisioner.close):
            try:
                closer()
            except Exception as e:
                logger.warning(f"Failed to release client: {e}")

    def __enter__(self) -> "CloudflareSolver":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
