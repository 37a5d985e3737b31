"""
Remote solving API client.

Endpoints (POST, JSON):
    /api/createTask                 -> taskId
    /api/waitTaskResult             long-poll, blocks server-side
    /api/getTaskResult              interval-poll
    /api/getBalance                 -> balance
    /api/linksocks/getLinkSocks     -> reverse tunnel endpoint for the provider helper
"""

import logging
import secrets
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from ...schemas.session import PollingMode, SessionConfig
from ...schemas.task import LinkSocksConfig, TaskDescriptor, TaskResult
from .exceptions import (
    CFSolverAPIError,
    CFSolverChallengeError,
    CFSolverConnectionError,
    CFSolverTimeoutError,
)

if TYPE_CHECKING:
    from ..tools.linksocks import LinkSocksSupervisor

logger = logging.getLogger(__name__)

# Per-call ceilings (seconds)
LONG_POLL_MAX_CALL_TIMEOUT = 310.0
LONG_POLL_GRACE = 10.0
INTERVAL_CALL_TIMEOUT = 30.0


class RemoteTaskClient:
    """
    Creates solving tasks and waits for their results.

    Usage:
        api = RemoteTaskClient(api_key="...")
        task_id = api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=url))
        result = api.wait_for_result(task_id, timeout_seconds=120)
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://solver.zetx.site",
        polling_mode: PollingMode = PollingMode.LONG_POLL,
        polling_interval: float = 2.0,
        timeout: float = 30.0,
        solve_timeout: float = 120.0,
        proxy: str | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.polling_mode = polling_mode
        self.polling_interval = polling_interval
        self.timeout = timeout
        self.solve_timeout = solve_timeout

        self._client = client or httpx.Client(timeout=timeout, proxy=proxy)
        self._owns_client = client is None
        self._sleep = sleep
        self._clock = clock

        self._network_provider: "LinkSocksSupervisor | None" = None
        self._linksocks_config: LinkSocksConfig | None = None
        self._linksocks_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: SessionConfig, client: httpx.Client | None = None) -> "RemoteTaskClient":
        return cls(
            api_key=config.api_key,
            api_base=config.api_base,
            polling_mode=config.polling_mode,
            polling_interval=config.polling_interval,
            timeout=config.timeout,
            solve_timeout=config.solve_timeout,
            proxy=config.effective_api_proxy,
            client=client,
        )

    def attach_network_provider(self, provider: "LinkSocksSupervisor | None") -> None:
        """Route remote solving through ``provider`` (started on first task)."""
        self._network_provider = provider

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.api_base}{path}"

    def _post(
        self,
        path: str,
        payload: dict[str, Any],
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = self._url(path)
        try:
            return self._client.post(url, json=payload, headers=headers, timeout=timeout or self.timeout)
        except httpx.HTTPError as e:
            raise CFSolverConnectionError(f"Failed to connect to API: {e}", url=url) from e

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise CFSolverAPIError(
                "Invalid JSON response from API",
                url=str(response.request.url),
                status_code=response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise CFSolverAPIError(
                "Unexpected API response shape",
                url=str(response.request.url),
                status_code=response.status_code,
            )
        return data

    @staticmethod
    def _error_id(data: dict[str, Any]) -> int:
        """errorId as an int; numeric strings such as "0" are accepted."""
        value = data.get("errorId")
        if value is None or value == "":
            return 0
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise CFSolverAPIError(f"Invalid errorId in API response: {value!r}") from e

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, descriptor: TaskDescriptor) -> str:
        """Submit a task and return its id.

        Raises:
            CFSolverAPIError: non-zero errorId or no taskId in the response
            CFSolverConnectionError: API unreachable, or the network provider
                could not be started
        """
        if descriptor.linksocks is None and self._network_provider is not None:
            self._network_provider.start()
            descriptor = descriptor.model_copy(update={"linksocks": self._network_provider.descriptor()})

        response = self._post("/api/createTask", {"apiKey": self.api_key, "task": descriptor.to_payload()})
        data = self._json(response)

        error_id = self._error_id(data)
        if error_id:
            description = data.get("errorDescription") or "Unknown error"
            raise CFSolverAPIError(
                f"Failed to create task: {description}",
                url=descriptor.website_url,
                error_id=error_id,
                status_code=response.status_code,
            )

        task_id = data.get("taskId")
        if not task_id:
            raise CFSolverAPIError(
                "Failed to create task: no taskId returned",
                url=descriptor.website_url,
                status_code=response.status_code,
            )

        logger.debug(f"Task created: {task_id} ({descriptor.type.value})")
        return str(task_id)

    def wait_for_result(self, task_id: str, timeout_seconds: float | None = None) -> TaskResult:
        """Poll until the task reaches a terminal status.

        The deadline is checked at loop entry; an in-flight call is not
        cancelled and the remote task keeps running after a local timeout.

        Raises:
            CFSolverChallengeError: the task finished unsuccessfully
            CFSolverTimeoutError: no terminal status before the deadline
            CFSolverAPIError: the API answered 200 with an unparsable body
        """
        timeout_seconds = timeout_seconds or self.solve_timeout
        interval = self.polling_mode is PollingMode.INTERVAL
        path = "/api/getTaskResult" if interval else "/api/waitTaskResult"
        payload = {"apiKey": self.api_key, "taskId": task_id}
        deadline = self._clock() + timeout_seconds
        attempt = 0

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            attempt += 1

            if interval:
                call_timeout = INTERVAL_CALL_TIMEOUT
            else:
                call_timeout = min(remaining + LONG_POLL_GRACE, LONG_POLL_MAX_CALL_TIMEOUT)

            logger.debug(f"Polling task {task_id}: attempt={attempt}, remaining={remaining:.1f}s")
            try:
                response = self._post(path, payload, timeout=call_timeout)
            except CFSolverConnectionError as e:
                logger.debug(f"Poll attempt {attempt} for {task_id} failed: {e}")
                self._pause(interval)
                continue

            if response.status_code != 200:
                logger.debug(f"Poll attempt {attempt} for {task_id} returned HTTP {response.status_code}")
                self._pause(interval)
                continue

            try:
                result = TaskResult.model_validate(self._json(response))
            except ValidationError as e:
                raise CFSolverAPIError(f"Malformed task result: {e}", status_code=response.status_code) from e

            if result.is_processing:
                self._pause(interval)
                continue
            if result.is_timeout:
                # server-side wait expired; the task itself is still alive
                self._pause(interval)
                continue

            if not result.succeeded:
                raise CFSolverChallengeError(f"Task failed: {result.error_message}", task_id=task_id)
            return result

        raise CFSolverTimeoutError(
            f"Task timed out after {timeout_seconds}s",
            task_id=task_id,
            timeout_seconds=timeout_seconds,
        )

    def _pause(self, interval: bool) -> None:
        if interval:
            self._sleep(self.polling_interval)

    def solve(self, descriptor: TaskDescriptor, timeout_seconds: float | None = None) -> TaskResult:
        """create_task + wait_for_result."""
        task_id = self.create_task(descriptor)
        try:
            return self.wait_for_result(task_id, timeout_seconds)
        except CFSolverChallengeError as e:
            if e.url is None:
                e.url = descriptor.website_url
            raise

    # ------------------------------------------------------------------
    # Account / infrastructure
    # ------------------------------------------------------------------

    def get_balance(self) -> float:
        response = self._post("/api/getBalance", {"apiKey": self.api_key})
        if response.status_code != 200:
            raise CFSolverAPIError(
                f"Failed to get balance: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        data = self._json(response)
        error_id = self._error_id(data)
        if error_id:
            raise CFSolverAPIError(
                f"Failed to get balance: {data.get('errorDescription') or 'Unknown error'}",
                error_id=error_id,
                status_code=response.status_code,
            )
        try:
            return float(data.get("balance") or 0)
        except (TypeError, ValueError) as e:
            raise CFSolverAPIError(f"Invalid balance value: {data.get('balance')!r}") from e

    def get_linksocks_config(self) -> LinkSocksConfig:
        """Fetch (once) the reverse tunnel endpoint for the provider helper."""
        with self._linksocks_lock:
            if self._linksocks_config is not None:
                return self._linksocks_config

            response = self._post(
                "/api/linksocks/getLinkSocks",
                {"apiKey": self.api_key},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            if response.status_code != 200:
                error = response.text or f"HTTP {response.status_code}"
                raise CFSolverConnectionError(
                    f"Failed to get linksocks config: {error}",
                    url=self._url("/api/linksocks/getLinkSocks"),
                )

            data = self._json(response)
            if not data.get("url") or not data.get("token"):
                raise CFSolverAPIError("Invalid linksocks config: missing url or token")

            try:
                config = LinkSocksConfig.model_validate(data)
            except ValidationError as e:
                raise CFSolverAPIError(f"Invalid linksocks config: {e}") from e
            if not config.connector_token:
                config = config.model_copy(update={"connector_token": secrets.token_hex(16)})
            self._linksocks_config = config
            return config

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RemoteTaskClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
