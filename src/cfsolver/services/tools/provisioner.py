"""
Helper executable provisioning.

Resolves, downloads and version-tracks the helper binaries used by the
supervisors (linksocks, masktunnel).

Resolution order for ensure_tool(name):
    1. executable on PATH or in the working directory
    2. cached copy whose recorded version equals the required one
    3. fresh download: release URL first, then mirror

Cache layout:
    <cache_dir>/<tool>[.exe]
    <cache_dir>/version.json  {"tool_versions": {name: version}, "last_updated": epoch}
"""

import json
import logging
import os
import platform
import shutil
import stat
import threading
import time
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..solver.exceptions import CFSolverConnectionError

logger = logging.getLogger(__name__)

GITHUB_MIRROR_PREFIX = "https://gh-proxy.com/"
VERSION_FILE_NAME = "version.json"
DOWNLOAD_CHUNK_SIZE = 64 * 1024
PROGRESS_LOG_INTERVAL = 2.0


# ============================================
# Configuration
# ============================================


class ToolSpec(BaseModel):
    """Required version and release location of one helper tool."""

    model_config = ConfigDict(frozen=True)

    version: str
    release_base: str
    mirror_prefix: str | None = GITHUB_MIRROR_PREFIX

    def download_urls(self, asset: str) -> list[str]:
        """Primary release URL followed by the mirror URL (if any)."""
        url = f"{self.release_base.rstrip('/')}/download/{self.version}/{asset}"
        urls = [url]
        if self.mirror_prefix:
            urls.append(f"{self.mirror_prefix}{url}")
        return urls


def default_tools() -> dict[str, ToolSpec]:
    return {
        "masktunnel": ToolSpec(
            version="v1.0.6",
            release_base="https://github.com/cloudflyer-project/masktunnel/releases",
        ),
        "linksocks": ToolSpec(
            version="v1.7.6",
            release_base="https://github.com/linksocks/linksocks/releases",
        ),
    }


class ToolProvisionerConfig(BaseModel):
    """Tool table and cache location, injectable for tests."""

    model_config = ConfigDict(frozen=True)

    tools: dict[str, ToolSpec] = Field(default_factory=default_tools)
    cache_dir: str | None = None  # None = platform cache dir
    search_path: bool = True  # look on PATH / cwd before the cache
    download_timeout: float = 120.0
    proxy: str | None = None


# ============================================
# Platform helpers
# ============================================


def _is_windows() -> bool:
    return platform.system().lower().startswith("win")


def platform_name() -> str:
    system = platform.system().lower()
    if system.startswith("win"):
        return "windows"
    if system == "darwin":
        return "darwin"
    return "linux"


def arch_name() -> str:
    machine = platform.machine().lower()
    if machine in ("amd64", "x86_64", "x64"):
        return "amd64"
    if machine in ("aarch64", "arm64"):
        return "arm64"
    if machine in ("i386", "i686", "x86", "386"):
        return "386"
    return "amd64"


def binary_name(tool: str) -> str:
    return f"{tool}.exe" if _is_windows() else tool


def asset_name(tool: str) -> str:
    """Release asset file name: {tool}-{platform}-{arch}[.exe]"""
    extension = ".exe" if _is_windows() else ""
    return f"{tool}-{platform_name()}-{arch_name()}{extension}"


def default_cache_dir() -> Path:
    home = Path.home()
    system = platform_name()
    if system == "windows":
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / "cloudflyer" / "bin"
        return home / ".cloudflyer" / "bin"
    if system == "darwin":
        return home / "Library" / "Caches" / "cloudflyer" / "bin"
    xdg_cache = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache:
        return Path(xdg_cache) / "cloudflyer" / "bin"
    return home / ".cache" / "cloudflyer" / "bin"


def _format_bytes(size: float) -> str:
    units = ["B", "KB", "MB", "GB"]
    idx = 0
    while size >= 1024 and idx < len(units) - 1:
        size /= 1024
        idx += 1
    return f"{size:.1f}{units[idx]}"


# ============================================
# Provisioner
# ============================================


class ToolProvisioner:
    """
    Resolves helper executables, downloading them on demand.

    Usage:
        provisioner = ToolProvisioner()
        path = provisioner.ensure_tool("masktunnel")
    """

    def __init__(
        self,
        config: ToolProvisionerConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or ToolProvisionerConfig()
        self.cache_dir = Path(self.config.cache_dir) if self.config.cache_dir else default_cache_dir()
        self.version_file = self.cache_dir / VERSION_FILE_NAME
        self._client = client
        self._owns_client = client is None
        self._lock = threading.Lock()

    def _spec(self, tool: str) -> ToolSpec:
        spec = self.config.tools.get(tool)
        if spec is None:
            raise CFSolverConnectionError(f"Unknown tool: {tool}")
        return spec

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.download_timeout,
                follow_redirects=True,
                proxy=self.config.proxy,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def required_version(self, tool: str) -> str:
        return self._spec(tool).version

    def executable_path(self, tool: str) -> Path:
        """Location of the cached binary (whether or not it exists yet)."""
        return self.cache_dir / binary_name(tool)

    def ensure_tool(self, tool: str) -> Path:
        """Return a runnable executable for ``tool``, downloading it if needed.

        Raises:
            CFSolverConnectionError: unknown tool or every download source failed
        """
        spec = self._spec(tool)

        with self._lock:
            if self.config.search_path:
                found = self._find_on_path(binary_name(tool))
                if found is not None:
                    logger.debug(f"Found {tool} on PATH: {found}")
                    return found

            executable = self.executable_path(tool)
            if executable.exists() and not self.needs_update(tool):
                logger.debug(f"Using cached {tool}: {executable}")
                return executable

            logger.info(f"Downloading {tool} {spec.version}...")
            self._download_tool(tool, spec, executable)
            self._save_installed_version(tool, spec.version)
            logger.info(f"Installed {tool} {spec.version} at {executable}")
            return executable

    def needs_update(self, tool: str) -> bool:
        """True if the recorded installed version differs from the required one."""
        required = self.config.tools.get(tool)
        current = self._load_installed_versions().get(tool)
        if required is None or current is None:
            return True
        return current != required.version

    def force_update(self, tool: str) -> bool:
        """Drop the version record and cached binary, then provision again."""
        try:
            versions = self._load_installed_versions()
            versions.pop(tool, None)
            self._save_installed_versions(versions)
            self.executable_path(tool).unlink(missing_ok=True)
            self.ensure_tool(tool)
            return True
        except (CFSolverConnectionError, OSError) as e:
            logger.warning(f"Failed to force update {tool}: {e}")
            return False

    def get_version_info(self) -> dict[str, Any]:
        installed = self._load_installed_versions()
        required = {name: spec.version for name, spec in self.config.tools.items()}
        outdated = [
            {"tool": name, "required": version, "current": installed.get(name, "not installed")}
            for name, version in required.items()
            if installed.get(name) != version
        ]
        return {
            "required_versions": required,
            "installed_versions": installed,
            "version_file": str(self.version_file),
            "version_file_exists": self.version_file.exists(),
            "outdated_tools": outdated,
        }

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @staticmethod
    def _find_on_path(name: str) -> Path | None:
        local = Path(name)
        if local.is_file() and os.access(local, os.X_OK):
            return local.resolve()
        found = shutil.which(name)
        return Path(found).resolve() if found else None

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def _download_tool(self, tool: str, spec: ToolSpec, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        last_error: Exception | None = None

        for url in spec.download_urls(asset_name(tool)):
            try:
                self._download_file(url, target, f"{tool} {spec.version}")
            except (httpx.HTTPError, OSError, CFSolverConnectionError) as e:
                logger.debug(f"Download failed from {url}: {e}")
                last_error = e
                continue

            if not _is_windows():
                mode = target.stat().st_mode
                target.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            return

        raise CFSolverConnectionError(
            f"Failed to download {tool} from all sources: {last_error}",
            url=spec.release_base,
        )

    def _download_file(self, url: str, target: Path, label: str) -> None:
        logger.info(f"Downloading {label} from {url}")
        partial = target.with_name(target.name + ".part")

        try:
            with self._http().stream("GET", url) as response:
                if response.status_code != 200:
                    raise CFSolverConnectionError(f"HTTP {response.status_code}", url=url)

                total = int(response.headers.get("content-length") or 0)
                downloaded = 0
                last_log = time.monotonic()
                with open(partial, "wb") as fh:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
                        downloaded += len(chunk)
                        now = time.monotonic()
                        if now - last_log >= PROGRESS_LOG_INTERVAL:
                            progress = _format_bytes(downloaded)
                            if total:
                                progress += f"/{_format_bytes(total)}"
                            logger.info(f"Downloading {label}: {progress}")
                            last_log = now

            os.replace(partial, target)
        finally:
            partial.unlink(missing_ok=True)

        logger.info(f"Download complete: {_format_bytes(downloaded)}")

    # ------------------------------------------------------------------
    # Version record
    # ------------------------------------------------------------------

    def _load_installed_versions(self) -> dict[str, str]:
        if not self.version_file.exists():
            return {}
        try:
            data = json.loads(self.version_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read version file {self.version_file}: {e}")
            return {}
        versions = data.get("tool_versions") if isinstance(data, dict) else None
        if not isinstance(versions, dict):
            return {}
        return {str(k): str(v) for k, v in versions.items()}

    def _save_installed_versions(self, versions: dict[str, str]) -> None:
        data = {"tool_versions": versions, "last_updated": time.time()}
        try:
            self.version_file.parent.mkdir(parents=True, exist_ok=True)
            self.version_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to write version file {self.version_file}: {e}")

    def _save_installed_version(self, tool: str, version: str) -> None:
        versions = self._load_installed_versions()
        versions[tool] = version
        self._save_installed_versions(versions)
