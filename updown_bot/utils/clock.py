"""
Wall clock and sleep abstraction.
Injected wherever the bot waits or reads the time so tests can run without real delays.
"""

import asyncio
import time


class SystemClock:
    """Clock backed by the system time and the running event loop."""

    def time(self) -> float:
        """Current Unix time in seconds."""
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
