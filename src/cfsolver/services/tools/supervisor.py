"""
Lifecycle supervision of locally-run helper executables.

Each supervisor owns at most one live process. start() and stop() are
idempotent and serialized per instance; stdout/stderr are drained by
reader threads that are joined on stop().

Subclasses provide the kind-specific argument list:
    LinkSocksSupervisor   network-provider  provider -t <token> -u <ws_url> [-x <socks5>]
    MaskTunnelSupervisor  tls-fingerprint   --addr <addr> --port <port> [--upstream-proxy <url>]
"""

import logging
import subprocess
import threading
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import IO

from ..solver.exceptions import CFSolverConnectionError
from .provisioner import ToolProvisioner

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_WAIT = 2.0
DEFAULT_STOP_TIMEOUT = 5.0

# Lines kept per stream for the startup-exit error message
OUTPUT_TAIL_LINES = 200


class HelperKind(str, Enum):
    NETWORK_PROVIDER = "network-provider"
    TLS_FINGERPRINT = "tls-fingerprint"


@dataclass
class HelperProcessHandle:
    """A launched helper process plus the threads draining its output."""

    kind: HelperKind
    process: subprocess.Popen
    addr: str | None = None
    port: int | None = None
    readers: list[threading.Thread] = field(default_factory=list)
    stdout_lines: deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))
    stderr_lines: deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))

    @property
    def alive(self) -> bool:
        return self.process.poll() is None

    @property
    def pid(self) -> int:
        return self.process.pid

    def output(self) -> str:
        """Captured stderr, or stdout when stderr is empty."""
        stderr = "\n".join(self.stderr_lines).strip()
        return stderr or "\n".join(self.stdout_lines).strip()


class HelperProcessSupervisor:
    """Base supervisor: provisioning, launch, startup check and teardown."""

    tool_name: str = ""
    kind: HelperKind
    stdout_log_level = logging.INFO
    stderr_log_level = logging.INFO

    def __init__(
        self,
        provisioner: ToolProvisioner,
        upstream_proxy: str | None = None,
        startup_wait: float = DEFAULT_STARTUP_WAIT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        command_prefix: Sequence[str] | None = None,
    ) -> None:
        self.provisioner = provisioner
        self.upstream_proxy = upstream_proxy
        self.startup_wait = startup_wait
        self.stop_timeout = stop_timeout
        # argv head used instead of the provisioned executable when set
        self._command_prefix = list(command_prefix) if command_prefix else None
        self._handle: HelperProcessHandle | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Kind-specific hooks
    # ------------------------------------------------------------------

    def build_args(self) -> list[str]:
        raise NotImplementedError

    def bind_address(self) -> tuple[str | None, int | None]:
        return None, None

    def mask_command(self, command: Sequence[str]) -> str:
        """Render a command line for logging with secrets hidden."""
        return " ".join(command)

    def on_started(self, handle: HelperProcessHandle) -> None:
        pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def handle(self) -> HelperProcessHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.alive

    def start(self) -> HelperProcessHandle:
        """Launch the helper unless a live process already exists.

        Raises:
            CFSolverConnectionError: provisioning failed, the process could not
                be launched, or it exited within the startup grace period
        """
        with self._lock:
            if self._handle is not None:
                if self._handle.alive:
                    logger.debug(f"{self.tool_name} already running (pid={self._handle.pid})")
                    return self._handle
                logger.warning(f"{self.tool_name} exited unexpectedly, restarting")
                self._teardown(self._handle)
                self._handle = None

            prefix = self._command_prefix or [str(self.provisioner.ensure_tool(self.tool_name))]
            command = [*prefix, *self.build_args()]
            logger.info(f"{self.tool_name} command: {self.mask_command(command)}")
            logger.info(f"Starting {self.tool_name}...")

            try:
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as e:
                raise CFSolverConnectionError(f"Failed to launch {self.tool_name}: {e}") from e

            addr, port = self.bind_address()
            handle = HelperProcessHandle(kind=self.kind, process=process, addr=addr, port=port)
            handle.readers = [
                self._start_reader(process.stdout, "stdout", handle.stdout_lines, self.stdout_log_level),
                self._start_reader(process.stderr, "stderr", handle.stderr_lines, self.stderr_log_level),
            ]

            try:
                exit_code = process.wait(timeout=self.startup_wait)
            except subprocess.TimeoutExpired:
                exit_code = None

            if exit_code is not None:
                for reader in handle.readers:
                    reader.join(timeout=self.stop_timeout)
                output = handle.output()
                message = f"{self.tool_name} process exited with code {exit_code}"
                if output:
                    message += f": {output}"
                raise CFSolverConnectionError(message, output=output, exit_code=exit_code)

            self._handle = handle
            self.on_started(handle)
            logger.info(f"{self.tool_name} started (pid={handle.pid})")
            return handle

    def stop(self) -> None:
        """Terminate gracefully, force-kill after the grace period, join readers."""
        with self._lock:
            handle = self._handle
            if handle is None:
                return
            self._handle = None
            logger.info(f"Stopping {self.tool_name}...")
            self._teardown(handle)
            logger.info(f"{self.tool_name} stopped")

    def _teardown(self, handle: HelperProcessHandle) -> None:
        process = handle.process
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"{self.tool_name} did not exit in {self.stop_timeout}s, killing")
                process.kill()
                process.wait(timeout=self.stop_timeout)
        for reader in handle.readers:
            reader.join(timeout=self.stop_timeout)

    def _start_reader(
        self,
        stream: IO[str] | None,
        name: str,
        sink: deque[str],
        level: int,
    ) -> threading.Thread:
        def drain() -> None:
            if stream is None:
                return
            with stream:
                for line in stream:
                    line = line.rstrip("\r\n")
                    sink.append(line)
                    logger.log(level, f"[{self.tool_name} {name}] {line}")

        thread = threading.Thread(target=drain, name=f"{self.tool_name}-{name}", daemon=True)
        thread.start()
        return thread

    def __enter__(self) -> "HelperProcessSupervisor":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
