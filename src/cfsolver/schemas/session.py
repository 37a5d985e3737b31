import random
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..services.tools.provisioner import ToolProvisionerConfig

if TYPE_CHECKING:
    from ..core.config import Settings

MASKTUNNEL_PORT_RANGE = (18000, 18999)


class PollingMode(str, Enum):
    """How the task result is awaited."""

    LONG_POLL = "long_poll"  # waitTaskResult blocks server-side
    INTERVAL = "interval"  # getTaskResult + fixed sleep


def normalize_proxy(value: Any) -> str | None:
    """Trim, replace full-width colons and treat empty strings as unset."""
    if value is None:
        return None
    normalized = str(value).strip().replace("：", ":")
    return normalized or None


def _random_masktunnel_port() -> int:
    return random.randint(*MASKTUNNEL_PORT_RANGE)


class SessionConfig(BaseModel):
    """Immutable per-solver configuration, fixed at construction."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    api_key: str
    api_base: str = "https://solver.zetx.site"

    # ============================================
    # Solve behaviour
    # ============================================
    solve: bool = True
    on_challenge: bool = True  # False = pre-solve before every request
    polling_mode: PollingMode = PollingMode.LONG_POLL
    polling_interval: float = Field(default=2.0, gt=0)

    # ============================================
    # Timeouts (seconds)
    # ============================================
    timeout: float = Field(default=30.0, gt=0)
    solve_timeout: float = Field(default=120.0, gt=0)

    # ============================================
    # Network
    # ============================================
    proxy: str | None = None
    api_proxy: str | None = None
    impersonate: str | None = None

    # ============================================
    # Helper processes
    # ============================================
    use_linksocks: bool = True
    use_masktunnel: bool = False
    masktunnel_addr: str = "127.0.0.1"
    masktunnel_port: int = Field(default_factory=_random_masktunnel_port, ge=1, le=65535)
    tools: ToolProvisionerConfig = Field(default_factory=ToolProvisionerConfig)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("api_key must not be empty")
        return v

    @field_validator("api_base")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("proxy", "api_proxy", mode="before")
    @classmethod
    def validate_proxy(cls, v: Any) -> str | None:
        return normalize_proxy(v)

    @property
    def effective_api_proxy(self) -> str | None:
        """Proxy for API calls; falls back to the request proxy."""
        return self.api_proxy or self.proxy

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> "SessionConfig":
        values: dict[str, Any] = {
            "api_key": settings.CLOUDFLYER_API_KEY or "",
            "api_base": settings.CLOUDFLYER_API_BASE,
            "solve": settings.CLOUDFLYER_SOLVE,
            "on_challenge": settings.CLOUDFLYER_ON_CHALLENGE,
            "polling_mode": PollingMode.INTERVAL if settings.CLOUDFLYER_USE_POLLING else PollingMode.LONG_POLL,
            "polling_interval": settings.CLOUDFLYER_POLLING_INTERVAL,
            "timeout": settings.CLOUDFLYER_TIMEOUT,
            "solve_timeout": settings.CLOUDFLYER_SOLVE_TIMEOUT,
            "proxy": settings.CLOUDFLYER_PROXY,
            "api_proxy": settings.CLOUDFLYER_API_PROXY,
            "impersonate": settings.CLOUDFLYER_IMPERSONATE,
            "use_linksocks": settings.CLOUDFLYER_USE_LINKSOCKS,
            "use_masktunnel": settings.CLOUDFLYER_USE_MASKTUNNEL,
        }
        if settings.CLOUDFLYER_CACHE_DIR:
            values["tools"] = ToolProvisionerConfig(cache_dir=settings.CLOUDFLYER_CACHE_DIR)
        values.update(overrides)
        return cls(**values)
