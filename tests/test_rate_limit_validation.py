"""Tests for rate limiting in runtime.py and on the auth endpoints.

Without Redis the runtime falls back to an in-process token bucket.
Invalid window_seconds should be logged and default to 60 seconds.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from sessionguard import app as app_module
from sessionguard.service.runtime import Runtime, check_rate_limit, get_runtime


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime with no Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        """Create a mock runtime with Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        """Rate limit of 0 or negative always passes."""
        assert await check_rate_limit(mock_runtime, "test_key", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "test_key", -1, 60) is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        """Invalid window_seconds logs warning and defaults to 60."""
        with patch("sessionguard.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, mock_runtime):
        with patch("sessionguard.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 60)

            mock_logger.warning.assert_not_called()

    async def test_bucket_exhausts(self, mock_runtime):
        for i in range(5):
            assert await check_rate_limit(mock_runtime, "test_key", 5, 60) is True, f"Call {i+1} should pass"

        assert await check_rate_limit(mock_runtime, "test_key", 5, 60) is False

    async def test_different_keys_independent(self, mock_runtime):
        for _ in range(3):
            await check_rate_limit(mock_runtime, "key1", 3, 60)

        assert await check_rate_limit(mock_runtime, "key2", 3, 60) is True
        assert await check_rate_limit(mock_runtime, "key1", 3, 60) is False

    async def test_remaining_and_reset_reported(self, mock_runtime):
        allowed, remaining, reset_seconds = await check_rate_limit(
            mock_runtime, "test_key", 3, 60, return_remaining=True
        )

        assert allowed is True
        assert remaining == 2
        assert reset_seconds == 0

    async def test_uses_redis_when_available(self, mock_runtime_with_cache):
        await check_rate_limit(mock_runtime_with_cache, "test_key", 10, 60)

        mock_runtime_with_cache.cache.check_rate_limit.assert_called_once_with(
            "test_key", 10, 60, return_remaining=False, cost=1
        )

    async def test_bucket_refills_over_time(self, mock_runtime):
        for _ in range(2):
            await check_rate_limit(mock_runtime, "test_key", 2, 1)
        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is False

        # Backdate the last refill so a full window has elapsed
        tokens, last_ts = mock_runtime._local_rate_limits["test_key"]
        mock_runtime._local_rate_limits["test_key"] = (tokens, last_ts - timedelta(seconds=2))

        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is True

    async def test_concurrent_rate_limit_calls(self):
        """Exactly ``limit`` concurrent callers get through."""
        runtime = get_runtime()
        results = []

        async def make_request():
            results.append(await check_rate_limit(runtime, "concurrent", 10, 60))

        await asyncio.gather(*[make_request() for _ in range(15)])

        assert results.count(True) == 10
        assert results.count(False) == 5


class TestEndpointRateLimits:
    def test_forgot_password_is_limited_per_identifier(self):
        client = TestClient(app_module.app)
        limit = get_runtime().settings.reset_rate_limit_per_minute

        for _ in range(limit):
            assert client.post("/v1/forgot-password", json={"identifier": "ghost"}).status_code == 200
        response = client.post("/v1/forgot-password", json={"identifier": "ghost"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        # Other identifiers have their own bucket
        assert client.post("/v1/forgot-password", json={"identifier": "other"}).status_code == 200

    def test_reset_confirm_is_limited_per_token(self):
        client = TestClient(app_module.app)
        limit = get_runtime().settings.reset_rate_limit_per_minute
        body = {
            "tokenId": "guess-me",
            "token": "wrong",
            "newPassword": "N3w-password!",
            "confirmNewPassword": "N3w-password!",
        }

        statuses = [client.post("/v1/reset-password", json=body).status_code for _ in range(limit + 1)]

        assert statuses[:limit] == [400] * limit
        assert statuses[-1] == 429

    def test_refresh_is_limited_per_client(self, monkeypatch):
        client = TestClient(app_module.app)
        limit = 3
        monkeypatch.setattr(get_runtime().settings, "session_rate_limit_per_minute", limit)

        statuses = [client.post("/v1/refresh").status_code for _ in range(limit + 1)]

        assert statuses[:limit] == [401] * limit
        assert statuses[-1] == 429

    def test_logout_is_limited_per_client(self, monkeypatch):
        client = TestClient(app_module.app)
        limit = 3
        monkeypatch.setattr(get_runtime().settings, "session_rate_limit_per_minute", limit)

        statuses = [client.post("/v1/logout").status_code for _ in range(limit + 1)]

        assert statuses[:limit] == [200] * limit
        assert statuses[-1] == 429
        assert client.post("/v1/logout").json()["error"]["code"] == "rate_limited"
