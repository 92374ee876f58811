"""
Tests for retry helpers.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from arena.core.retry_utils import (
    ErrorType,
    calculate_backoff_delay,
    classify_error,
    retry_async,
)


@pytest.mark.unit
class TestClassifyError:
    @pytest.mark.parametrize(
        "error",
        [
            ConnectionError("Connection reset by peer"),
            RuntimeError("429 Too Many Requests"),
            asyncio.TimeoutError(),
            RuntimeError("header not found"),
        ],
    )
    def test_transient(self, error):
        assert classify_error(error) == ErrorType.TRANSIENT

    @pytest.mark.parametrize(
        "error",
        [
            RuntimeError("execution reverted"),
            RuntimeError("401 Unauthorized"),
            RuntimeError("invalid nonce, request timed out"),
        ],
    )
    def test_permanent_wins(self, error):
        assert classify_error(error) == ErrorType.PERMANENT

    def test_unknown(self):
        assert classify_error(RuntimeError("something odd")) == ErrorType.UNKNOWN


@pytest.mark.unit
class TestBackoff:
    def test_exponential_without_jitter(self):
        assert calculate_backoff_delay(0, jitter=False) == 1.0
        assert calculate_backoff_delay(3, jitter=False) == 8.0
        assert calculate_backoff_delay(10, jitter=False) == 30.0

    def test_jitter_stays_below_cap(self):
        for attempt in range(6):
            assert 0 <= calculate_backoff_delay(attempt, base_delay=0.5) <= 16


@pytest.mark.unit
class TestRetryAsync:
    async def test_retries_transient_then_succeeds(self, monkeypatch):
        monkeypatch.setattr(asyncio, "sleep", AsyncMock())
        func = AsyncMock(side_effect=[ConnectionError("connection reset"), "ok"])

        assert await retry_async(func, "arg", max_attempts=3) == "ok"
        assert func.await_count == 2

    async def test_permanent_error_is_not_retried(self, monkeypatch):
        monkeypatch.setattr(asyncio, "sleep", AsyncMock())
        func = AsyncMock(side_effect=RuntimeError("execution reverted"))

        with pytest.raises(RuntimeError):
            await retry_async(func, max_attempts=3)
        assert func.await_count == 1

    async def test_gives_up_after_max_attempts(self, monkeypatch):
        monkeypatch.setattr(asyncio, "sleep", AsyncMock())
        func = AsyncMock(side_effect=ConnectionError("timeout"))

        with pytest.raises(ConnectionError):
            await retry_async(func, max_attempts=2)
        assert func.await_count == 2

    async def test_only_listed_errors_are_retried(self, monkeypatch):
        monkeypatch.setattr(asyncio, "sleep", AsyncMock())
        func = AsyncMock(side_effect=KeyError("connection"))

        with pytest.raises(KeyError):
            await retry_async(func, max_attempts=3, retry_on=(ConnectionError,))
        assert func.await_count == 1
