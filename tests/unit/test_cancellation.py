"""Tests for cooperative cancellation tokens."""

import asyncio
import time

import pytest

from relay_engine.common.cancellation import CancellationToken
from relay_engine.common.exceptions import ExecutionCancelledError


class TestCancellationToken:
    def test_initially_not_cancelled(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_cancel_records_first_reason(self):
        token = CancellationToken()
        token.cancel("cancelled by user")
        token.cancel("cancelled again")
        assert token.cancelled is True
        assert token.reason == "cancelled by user"
        with pytest.raises(ExecutionCancelledError, match="cancelled by user"):
            token.raise_if_cancelled()

    async def test_sleep_completes(self):
        token = CancellationToken()
        started = time.monotonic()
        await token.sleep(0.05)
        assert time.monotonic() - started >= 0.05

    async def test_sleep_interrupted_by_cancel(self):
        token = CancellationToken()

        async def cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel()

        started = time.monotonic()
        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(ExecutionCancelledError):
            await token.sleep(30)
        await canceller
        assert time.monotonic() - started < 5

    async def test_zero_sleep_still_observes_cancel(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ExecutionCancelledError):
            await token.sleep(0)
