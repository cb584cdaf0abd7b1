"""Unit tests for startup retry with backoff."""

from __future__ import annotations

import pytest

from warren.workspace_runtime.retry import backoff_delay, retry_async


def test_backoff_grows_and_caps() -> None:
    assert 1.0 <= backoff_delay(0, 1.0, 30.0) <= 1.1
    assert 4.0 <= backoff_delay(2, 1.0, 30.0) <= 4.4
    assert 30.0 <= backoff_delay(10, 1.0, 30.0) <= 33.0


async def test_succeeds_after_failures() -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionError("daemon not up yet")
        return "ok"

    assert await retry_async(flaky, attempts=5, base_delay=0.001) == "ok"
    assert calls == 3


async def test_gives_up_with_last_error() -> None:
    calls = 0

    async def down() -> None:
        nonlocal calls
        calls += 1
        raise ConnectionError(f"attempt {calls}")

    with pytest.raises(ConnectionError, match="attempt 3"):
        await retry_async(down, attempts=3, base_delay=0.001)
    assert calls == 3


async def test_other_errors_not_retried() -> None:
    calls = 0

    async def broken() -> None:
        nonlocal calls
        calls += 1
        raise ValueError("bad config")

    with pytest.raises(ValueError, match="bad config"):
        await retry_async(broken, attempts=5, base_delay=0.001, retry_on=(ConnectionError,))
    assert calls == 1


async def test_zero_attempts_rejected() -> None:
    async def never() -> None:
        raise AssertionError

    with pytest.raises(ValueError, match="at least 1"):
        await retry_async(never, attempts=0)
