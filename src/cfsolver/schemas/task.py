"""
Remote solving task schemas.

Wire shapes (JSON over HTTPS POST):
    createTask      {apiKey, task: {type, websiteURL, websiteKey?, linksocks?: {url, token}}}
                    -> {taskId} | {errorId != 0, errorDescription}
    waitTaskResult  {apiKey, taskId}
    getTaskResult   -> {status, success?, error?, result: {result: {cookies, userAgent, headers, token}}}
    getLinkSocks    -> {url, token, connector_token}
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TaskType(str, Enum):
    CLOUDFLARE = "CloudflareTask"
    TURNSTILE = "TurnstileTask"


class TaskStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    READY = "ready"
    TIMEOUT = "timeout"
    FAILED = "failed"


SUCCESS_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.READY.value})


class LinkSocksDescriptor(BaseModel):
    """Reverse-tunnel endpoint the remote solver should route through."""

    url: str
    token: str


class TaskDescriptor(BaseModel):
    type: TaskType
    website_url: str
    website_key: str | None = None
    linksocks: LinkSocksDescriptor | None = None

    def to_payload(self) -> dict[str, Any]:
        """Render the ``task`` object of a createTask request."""
        task: dict[str, Any] = {"type": self.type.value, "websiteURL": self.website_url}
        if self.website_key is not None:
            task["websiteKey"] = self.website_key
        if self.linksocks is not None:
            task["linksocks"] = self.linksocks.model_dump()
        return task


class LinkSocksConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    token: str
    connector_token: str | None = None

    @property
    def ws_url(self) -> str:
        """Websocket form of ``url`` (http -> ws, https -> wss)."""
        if self.url.startswith("https://"):
            return "wss://" + self.url[len("https://") :]
        if self.url.startswith("http://"):
            return "ws://" + self.url[len("http://") :]
        return self.url


class TaskSolution(BaseModel):
    """Session artifacts returned by a solved task."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    cookies: Any = None  # name->value mapping, descriptor list or Set-Cookie text
    user_agent: str | None = Field(default=None, alias="userAgent")
    headers: Any = None
    token: str | None = None


def unwrap_solution(worker_result: Any) -> dict[str, Any]:
    """Resolve ``result`` / ``result.result`` to the innermost solution object.

    The service may nest the solution one extra level; exactly one optional
    level is unwrapped.
    """
    if not isinstance(worker_result, dict):
        return {}
    inner = worker_result.get("result")
    if isinstance(inner, dict):
        return inner
    return worker_result


class TaskResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str | None = None
    success: bool | None = None
    error: Any = None
    result: Any = None

    @property
    def is_processing(self) -> bool:
        return self.status == TaskStatus.PROCESSING.value

    @property
    def is_timeout(self) -> bool:
        return self.status == TaskStatus.TIMEOUT.value

    @property
    def succeeded(self) -> bool:
        """Explicit success flag wins; otherwise completed/ready with no error."""
        if self.success is not None:
            return self.success
        return self.status in SUCCESS_STATUSES and not self.error

    @property
    def error_message(self) -> str:
        """Most specific error text: nested result.error, then the top-level error."""
        if isinstance(self.result, dict) and self.result.get("error"):
            return str(self.result["error"])
        if self.error:
            return str(self.error)
        return "Unknown error"

    @property
    def solution(self) -> TaskSolution:
        return TaskSolution.model_validate(unwrap_solution(self.result))
