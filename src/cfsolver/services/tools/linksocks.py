"""LinkSocks provider: exposes this machine's network to the remote solver."""

import logging
from collections.abc import Callable, Sequence
from typing import Any

from ...schemas.task import LinkSocksConfig, LinkSocksDescriptor
from ..solver.exceptions import mask_proxy
from .provisioner import ToolProvisioner
from .supervisor import HelperKind, HelperProcessHandle, HelperProcessSupervisor

logger = logging.getLogger(__name__)

_SECRET_FLAGS = frozenset({"-t", "-c"})


class LinkSocksSupervisor(HelperProcessSupervisor):
    """
    Runs ``linksocks provider`` against the endpoint handed out by the API.

    Usage:
        supervisor = LinkSocksSupervisor(provisioner, api.get_linksocks_config)
        supervisor.start()
        supervisor.descriptor()   # LinkSocksDescriptor(url=wss://..., token=...)
    """

    tool_name = "linksocks"
    kind = HelperKind.NETWORK_PROVIDER

    def __init__(
        self,
        provisioner: ToolProvisioner,
        config_fetcher: Callable[[], LinkSocksConfig],
        upstream_proxy: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(provisioner, upstream_proxy=upstream_proxy, **kwargs)
        self._config_fetcher = config_fetcher
        self._config: LinkSocksConfig | None = None
        self._connector_token: str | None = None

    @property
    def ws_url(self) -> str | None:
        return self._config.ws_url if self._config else None

    @property
    def connector_token(self) -> str | None:
        return self._connector_token

    def build_args(self) -> list[str]:
        self._config = self._config_fetcher()
        args = ["provider", "-t", self._config.token, "-u", self._config.ws_url]

        if self.upstream_proxy:
            if self.upstream_proxy.lower().startswith(("http://", "https://")):
                logger.warning(
                    f"LinkSocks only supports SOCKS5 upstream proxy, ignoring {mask_proxy(self.upstream_proxy)}"
                )
            else:
                args += ["-x", self.upstream_proxy]
        return args

    def mask_command(self, command: Sequence[str]) -> str:
        masked: list[str] = []
        hide_next = False
        for arg in command:
            if hide_next:
                masked.append("***")
            else:
                masked.append(mask_proxy(arg) if "://" in arg and "@" in arg else arg)
            hide_next = arg in _SECRET_FLAGS
        return " ".join(masked)

    def on_started(self, handle: HelperProcessHandle) -> None:
        self._connector_token = self._config.connector_token if self._config else None
        logger.info("LinkSocks provider connected")

    def descriptor(self) -> LinkSocksDescriptor | None:
        """Endpoint and connector token to embed in task payloads."""
        if not self.is_running or self._config is None or not self._connector_token:
            return None
        return LinkSocksDescriptor(url=self._config.ws_url, token=self._connector_token)
