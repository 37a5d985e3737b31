"""
Unit tests for RemoteTaskClient.

The API is served by httpx.MockTransport; time is a fake clock advanced
by the injected sleep (interval-poll) or by the mock handler itself
(long-poll, where the server call is what blocks).
"""

import json
import re
from unittest.mock import MagicMock

import httpx
import pytest

from src.cfsolver.schemas.session import PollingMode
from src.cfsolver.schemas.task import LinkSocksDescriptor, TaskDescriptor, TaskType
from src.cfsolver.services.solver.exceptions import (
    CFSolverAPIError,
    CFSolverChallengeError,
    CFSolverConnectionError,
    CFSolverTimeoutError,
)

URL = "https://example.com/"


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


def completed(solution: dict | None = None, **extra) -> httpx.Response:
    payload = {"status": "completed", "result": {"result": solution or {"token": "tok"}}}
    payload.update(extra)
    return httpx.Response(200, json=payload)


# =============================================================================
# CREATE TASK
# =============================================================================
class TestCreateTask:
    """Tests for createTask."""

    def test_payload_and_task_id(self, make_api_client, api_requests) -> None:
        """Test the wire payload and returned task id."""
        api = make_api_client(lambda request: httpx.Response(200, json={"errorId": 0, "taskId": "t-1"}))

        task_id = api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))

        assert task_id == "t-1"
        request = api_requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.test/api/createTask"
        assert body_of(request) == {"apiKey": "test-key", "task": {"type": "CloudflareTask", "websiteURL": URL}}

    def test_turnstile_site_key(self, make_api_client, api_requests) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"taskId": 7}))

        task_id = api.create_task(TaskDescriptor(type=TaskType.TURNSTILE, website_url=URL, website_key="0xKEY"))

        assert task_id == "7"
        assert body_of(api_requests[0])["task"] == {
            "type": "TurnstileTask",
            "websiteURL": URL,
            "websiteKey": "0xKEY",
        }

    def test_error_id(self, make_api_client) -> None:
        """Test a non-zero errorId surfaces as an API error with its description."""
        api = make_api_client(
            lambda request: httpx.Response(200, json={"errorId": 1, "errorDescription": "Invalid API key"})
        )
        with pytest.raises(CFSolverAPIError) as exc_info:
            api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))
        assert "Invalid API key" in exc_info.value.message
        assert exc_info.value.error_id == 1

    def test_string_zero_error_id(self, make_api_client) -> None:
        """Test a numeric-string errorId of "0" is not treated as an error."""
        api = make_api_client(lambda request: httpx.Response(200, json={"errorId": "0", "taskId": "t-9"}))
        assert api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL)) == "t-9"

    def test_string_error_id(self, make_api_client) -> None:
        api = make_api_client(
            lambda request: httpx.Response(200, json={"errorId": "12", "errorDescription": "No balance"})
        )
        with pytest.raises(CFSolverAPIError) as exc_info:
            api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))
        assert exc_info.value.error_id == 12

    def test_missing_task_id(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"errorId": 0}))
        with pytest.raises(CFSolverAPIError, match="no taskId"):
            api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))

    def test_invalid_json(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(502, text="<html>Bad gateway</html>"))
        with pytest.raises(CFSolverAPIError) as exc_info:
            api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))
        assert exc_info.value.status_code == 502

    def test_connection_failure(self, make_api_client) -> None:
        """Test transport errors are wrapped, never leaked."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        api = make_api_client(handler)
        with pytest.raises(CFSolverConnectionError) as exc_info:
            api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    def test_network_provider_descriptor_embedded(self, make_api_client, api_requests) -> None:
        """Test the attached provider is started and its endpoint sent along."""
        provider = MagicMock()
        provider.descriptor.return_value = LinkSocksDescriptor(url="wss://tunnel.test/ws", token="conn-tok")
        api = make_api_client(lambda request: httpx.Response(200, json={"taskId": "t-1"}))
        api.attach_network_provider(provider)

        api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))

        provider.start.assert_called_once()
        assert body_of(api_requests[0])["task"]["linksocks"] == {"url": "wss://tunnel.test/ws", "token": "conn-tok"}

    def test_network_provider_failure_propagates(self, make_api_client, api_requests) -> None:
        provider = MagicMock()
        provider.start.side_effect = CFSolverConnectionError("linksocks process exited with code 1")
        api = make_api_client(lambda request: httpx.Response(200, json={"taskId": "t-1"}))
        api.attach_network_provider(provider)

        with pytest.raises(CFSolverConnectionError):
            api.create_task(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL))
        assert api_requests == []


# =============================================================================
# WAIT FOR RESULT
# =============================================================================
class TestWaitForResultLongPoll:
    """Tests for long-poll mode (waitTaskResult)."""

    def test_completed(self, make_api_client, api_requests) -> None:
        api = make_api_client(lambda request: completed({"cookies": {"cf_clearance": "abc"}, "userAgent": "UA"}))

        result = api.wait_for_result("t-1", timeout_seconds=30)

        assert result.succeeded
        assert result.solution.cookies == {"cf_clearance": "abc"}
        assert result.solution.user_agent == "UA"
        assert str(api_requests[0].url) == "https://api.test/api/waitTaskResult"
        assert body_of(api_requests[0]) == {"apiKey": "test-key", "taskId": "t-1"}

    def test_per_call_timeout_derived_from_remaining(self, make_api_client, api_requests) -> None:
        """Test the per-call ceiling is min(remaining + 10, 310)."""
        api = make_api_client(lambda request: completed())

        api.wait_for_result("t-1", timeout_seconds=120)
        api.wait_for_result("t-2", timeout_seconds=1000)

        assert api_requests[0].extensions["timeout"]["read"] == 130
        assert api_requests[1].extensions["timeout"]["read"] == 310

    def test_timeout_status_retried(self, make_api_client, fake_clock) -> None:
        """Test a server-side 'timeout' status keeps the loop going."""
        responses = iter(
            [
                httpx.Response(200, json={"status": "timeout"}),
                httpx.Response(200, json={"status": "timeout"}),
                completed(),
            ]
        )
        api = make_api_client(lambda request: next(responses))

        assert api.wait_for_result("t-1", timeout_seconds=60).succeeded
        assert fake_clock.sleeps == []

    def test_non_200_retried_without_sleep(self, make_api_client, fake_clock) -> None:
        responses = iter([httpx.Response(502), httpx.Response(500), completed()])
        api = make_api_client(lambda request: next(responses))

        assert api.wait_for_result("t-1", timeout_seconds=60).succeeded
        assert fake_clock.sleeps == []

    def test_connection_failure_retried(self, make_api_client) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return completed()

        api = make_api_client(handler)
        assert api.wait_for_result("t-1", timeout_seconds=60).succeeded
        assert calls["n"] == 2

    def test_deadline(self, make_api_client, fake_clock) -> None:
        """Test the loop stops once the budget is spent by blocking calls."""

        def handler(request: httpx.Request) -> httpx.Response:
            fake_clock.now += 25
            return httpx.Response(200, json={"status": "processing"})

        api = make_api_client(handler)
        with pytest.raises(CFSolverTimeoutError) as exc_info:
            api.wait_for_result("t-1", timeout_seconds=60)

        assert exc_info.value.task_id == "t-1"
        assert exc_info.value.timeout_seconds == 60
        assert fake_clock.now == 75


class TestWaitForResultInterval:
    """Tests for interval-poll mode (getTaskResult)."""

    def test_sleeps_between_processing(self, make_api_client, api_requests, fake_clock) -> None:
        responses = iter([httpx.Response(200, json={"status": "processing"})] * 2 + [completed()])
        api = make_api_client(lambda request: next(responses), polling_mode=PollingMode.INTERVAL, polling_interval=1.5)

        assert api.wait_for_result("t-1", timeout_seconds=60).succeeded
        assert str(api_requests[0].url) == "https://api.test/api/getTaskResult"
        assert api_requests[0].extensions["timeout"]["read"] == 30
        assert fake_clock.sleeps == [1.5, 1.5]

    def test_non_200_sleeps(self, make_api_client, fake_clock) -> None:
        responses = iter([httpx.Response(503), completed()])
        api = make_api_client(lambda request: next(responses), polling_mode=PollingMode.INTERVAL)

        api.wait_for_result("t-1", timeout_seconds=60)
        assert fake_clock.sleeps == [2.0]

    def test_always_processing_times_out_within_one_interval(self, make_api_client, fake_clock) -> None:
        """Test the timeout fires no later than deadline + one polling interval."""
        api = make_api_client(
            lambda request: httpx.Response(200, json={"status": "processing"}),
            polling_mode=PollingMode.INTERVAL,
            polling_interval=2.0,
        )
        with pytest.raises(CFSolverTimeoutError):
            api.wait_for_result("t-1", timeout_seconds=9)
        assert fake_clock.now <= 9 + 2.0


class TestWaitForResultFailures:
    """Tests for terminal failure handling."""

    def test_explicit_success_false(self, make_api_client) -> None:
        """Test an explicit success flag wins over a completed status."""
        api = make_api_client(
            lambda request: httpx.Response(
                200, json={"status": "completed", "success": False, "result": {"error": "captcha unsolvable"}}
            )
        )
        with pytest.raises(CFSolverChallengeError) as exc_info:
            api.wait_for_result("t-1", timeout_seconds=30)
        assert "captcha unsolvable" in exc_info.value.message
        assert exc_info.value.task_id == "t-1"

    def test_completed_with_error_field(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"status": "completed", "error": "proxy failed"}))
        with pytest.raises(CFSolverChallengeError, match="proxy failed"):
            api.wait_for_result("t-1", timeout_seconds=30)

    def test_nested_error_preferred(self, make_api_client) -> None:
        """Test the nested result.error wins over a generic top-level error."""
        api = make_api_client(
            lambda request: httpx.Response(
                200,
                json={"status": "failed", "error": "generic failure", "result": {"error": "Turnstile widget not found"}},
            )
        )
        with pytest.raises(CFSolverChallengeError) as exc_info:
            api.wait_for_result("t-1", timeout_seconds=30)
        assert exc_info.value.message == "Task failed: Turnstile widget not found"

    def test_top_level_error_fallback(self, make_api_client) -> None:
        api = make_api_client(
            lambda request: httpx.Response(200, json={"status": "failed", "error": "top", "result": {}})
        )
        with pytest.raises(CFSolverChallengeError, match="top"):
            api.wait_for_result("t-1", timeout_seconds=30)

    def test_unknown_error(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"status": "failed"}))
        with pytest.raises(CFSolverChallengeError, match="Unknown error"):
            api.wait_for_result("t-1", timeout_seconds=30)

    def test_explicit_success_true_with_odd_status(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"status": "done", "success": True}))
        assert api.wait_for_result("t-1", timeout_seconds=30).succeeded

    def test_solve_attaches_url(self, make_api_client) -> None:
        """Test solve() stamps the target URL on challenge errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/createTask":
                return httpx.Response(200, json={"taskId": "t-1"})
            return httpx.Response(200, json={"status": "failed", "error": "nope"})

        api = make_api_client(handler)
        with pytest.raises(CFSolverChallengeError) as exc_info:
            api.solve(TaskDescriptor(type=TaskType.CLOUDFLARE, website_url=URL), timeout_seconds=30)
        assert exc_info.value.url == URL


# =============================================================================
# BALANCE / LINKSOCKS
# =============================================================================
class TestGetBalance:
    """Tests for getBalance."""

    def test_balance(self, make_api_client, api_requests) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"errorId": 0, "balance": 12.5}))
        assert api.get_balance() == 12.5
        assert str(api_requests[0].url) == "https://api.test/api/getBalance"

    def test_error_id(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"errorId": 3, "errorDescription": "bad key"}))
        with pytest.raises(CFSolverAPIError, match="bad key"):
            api.get_balance()

    def test_string_zero_error_id(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"errorId": "0", "balance": "4.5"}))
        assert api.get_balance() == 4.5

    def test_http_error(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(401, json={}))
        with pytest.raises(CFSolverAPIError) as exc_info:
            api.get_balance()
        assert exc_info.value.status_code == 401


class TestGetLinkSocksConfig:
    """Tests for getLinkSocks."""

    def test_config_cached(self, make_api_client, api_requests) -> None:
        api = make_api_client(
            lambda request: httpx.Response(
                200, json={"url": "https://tunnel.test/ws", "token": "prov", "connector_token": "conn"}
            )
        )

        config = api.get_linksocks_config()
        again = api.get_linksocks_config()

        assert config is again
        assert len(api_requests) == 1
        assert api_requests[0].headers["Authorization"] == "Bearer test-key"
        assert config.ws_url == "wss://tunnel.test/ws"
        assert config.connector_token == "conn"

    def test_connector_token_generated(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"url": "http://tunnel.test", "token": "p"}))
        config = api.get_linksocks_config()
        assert re.fullmatch(r"[0-9a-f]{32}", config.connector_token)
        assert config.ws_url == "ws://tunnel.test"

    def test_non_200(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(403, text="forbidden"))
        with pytest.raises(CFSolverConnectionError, match="forbidden"):
            api.get_linksocks_config()

    def test_missing_token(self, make_api_client) -> None:
        api = make_api_client(lambda request: httpx.Response(200, json={"url": "https://tunnel.test"}))
        with pytest.raises(CFSolverAPIError):
            api.get_linksocks_config()
