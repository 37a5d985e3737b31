"""MaskTunnel: local proxy that re-does TLS with a browser fingerprint."""

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from ..solver.exceptions import mask_proxy
from .provisioner import ToolProvisioner
from .supervisor import HelperKind, HelperProcessSupervisor

logger = logging.getLogger(__name__)

RESET_TIMEOUT = 5.0


class MaskTunnelSupervisor(HelperProcessSupervisor):
    tool_name = "masktunnel"
    kind = HelperKind.TLS_FINGERPRINT
    stderr_log_level = logging.WARNING

    def __init__(
        self,
        provisioner: ToolProvisioner,
        addr: str = "127.0.0.1",
        port: int = 18000,
        upstream_proxy: str | None = None,
        client: httpx.Client | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(provisioner, upstream_proxy=upstream_proxy, **kwargs)
        self.addr = addr
        self.port = port
        self._client = client

    @property
    def proxy_url(self) -> str:
        return f"http://{self.addr}:{self.port}"

    @property
    def reset_url(self) -> str:
        return f"{self.proxy_url}/__{self.tool_name}__/reset"

    def build_args(self) -> list[str]:
        args = ["--addr", self.addr, "--port", str(self.port)]
        if self.upstream_proxy:
            args += ["--upstream-proxy", self.upstream_proxy]
        return args

    def bind_address(self) -> tuple[str | None, int | None]:
        return self.addr, self.port

    def mask_command(self, command: Sequence[str]) -> str:
        return " ".join(mask_proxy(arg) if "://" in arg else arg for arg in command)

    def reset_sessions(self) -> bool:
        """Ask the running helper to drop its TLS session cache.

        Returns False (and logs) when not running or on any failure.
        """
        if not self.is_running:
            logger.warning("MaskTunnel is not running")
            return False

        try:
            if self._client is not None:
                response = self._client.post(self.reset_url, timeout=RESET_TIMEOUT)
            else:
                # never route the local control call through an env proxy
                with httpx.Client(trust_env=False) as client:
                    response = client.post(self.reset_url, timeout=RESET_TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to reset MaskTunnel sessions: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"MaskTunnel reset returned status {response.status_code}")
            return False
        logger.debug("MaskTunnel sessions reset successfully")
        return True
