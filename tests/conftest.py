from collections.abc import Callable
from typing import Any

import httpx
import pytest

from src.cfsolver.schemas.session import PollingMode
from src.cfsolver.services.solver.api_client import RemoteTaskClient
from src.cfsolver.services.solver.response import Response
from src.cfsolver.services.tools.provisioner import ToolProvisionerConfig, ToolSpec

API_BASE = "https://api.test"
CHALLENGE_BODY = "<html><head><title>Just a moment...</title></head><body>cf-challenge</body></html>"


class FakeTransport:
    """Stands in for HttpTransport: replays queued responses, records requests."""

    def __init__(self, responses: list[Response] | None = None) -> None:
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: Response) -> None:
        self.responses.extend(responses)

    def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str | bytes | None = None,
    ) -> Response:
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "body": body})
        if self.responses:
            return self.responses.pop(0)
        return Response(status_code=200, text="ok", headers={"Server": "nginx"}, url=url)


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# =============================================================================
# RESPONSES
# =============================================================================
@pytest.fixture
def challenge_response() -> Response:
    """A Cloudflare interstitial response."""
    return Response(
        status_code=403,
        text=CHALLENGE_BODY,
        headers={"Server": "cloudflare", "Content-Type": "text/html"},
        url="https://example.com/",
    )


@pytest.fixture
def ok_response() -> Response:
    return Response(status_code=200, text="<html>welcome</html>", headers={"Server": "cloudflare"})


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    """Factory for additional transports (e.g. the MaskTunnel-routed one)."""
    return FakeTransport


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# API
# =============================================================================
@pytest.fixture
def api_requests() -> list[httpx.Request]:
    """Requests seen by the mock API transport."""
    return []


@pytest.fixture
def make_api_client(
    api_requests: list[httpx.Request],
    fake_clock: FakeClock,
) -> Callable[..., RemoteTaskClient]:
    """Build a RemoteTaskClient whose HTTP calls are served by ``handler``."""

    def factory(
        handler: Callable[[httpx.Request], httpx.Response],
        polling_mode: PollingMode = PollingMode.LONG_POLL,
        polling_interval: float = 2.0,
    ) -> RemoteTaskClient:
        def recording_handler(request: httpx.Request) -> httpx.Response:
            api_requests.append(request)
            return handler(request)

        client = httpx.Client(transport=httpx.MockTransport(recording_handler))
        return RemoteTaskClient(
            api_key="test-key",
            api_base=API_BASE,
            polling_mode=polling_mode,
            polling_interval=polling_interval,
            client=client,
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

    return factory


# =============================================================================
# TOOLS
# =============================================================================
@pytest.fixture
def tool_config(tmp_path) -> ToolProvisionerConfig:
    """Provisioner config with an isolated cache and no PATH lookup."""
    return ToolProvisionerConfig(
        tools={
            "masktunnel": ToolSpec(version="v1.0.6", release_base="https://github.test/masktunnel/releases"),
            "linksocks": ToolSpec(version="v1.7.6", release_base="https://github.test/linksocks/releases"),
        },
        cache_dir=str(tmp_path / "bin"),
        search_path=False,
    )
