"""Cooperative cancellation for long-running executions."""

import asyncio

from relay_engine.common.exceptions import ExecutionCancelledError


class CancellationToken:
    """Signalled once; observed at every suspension point of a run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = "cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelledError(f"Execution {self.reason}")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
