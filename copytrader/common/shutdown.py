"""
Cooperative shutdown for the executor loop.

The loop never hard-cancels an in-flight execution. Instead it observes a
`StopToken` at the top of every iteration and during its inter-cycle delay:

- `request_stop()` is idempotent and safe to call from a signal handler.
- `wait(timeout_s)` replaces `asyncio.sleep` so a stop request cuts the delay short.

SIGTERM/SIGINT are wired to the token via `install_signal_handlers`, chaining nothing:
the worker owns its process.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

logger = logging.getLogger(__name__)


class StopToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def request_stop(self, *, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason or "requested"
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout_s: float | None = None) -> bool:
        """
        Interruptible wait.

        Returns:
        - True if stop was requested (event set)
        - False if the timeout elapsed without a stop request
        """
        if timeout_s is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, float(timeout_s)))
        except asyncio.TimeoutError:
            return False
        return True


def install_signal_handlers(token: StopToken) -> None:
    """
    Best-effort SIGTERM/SIGINT -> `token.request_stop()`.

    Must be called from inside the running event loop.
    """
    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int, _frame: Any | None = None) -> None:
        name = signal.Signals(signum).name
        logger.info("shutdown signal received", extra={"event_type": "executor.signal", "signal": name})
        token.request_stop(reason=f"signal:{name}")

    for s in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(s, _handle_signal, int(s), None)
        except NotImplementedError:
            signal.signal(s, _handle_signal)
