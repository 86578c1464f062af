"""Mock reachability probe for testing."""

from __future__ import annotations

import asyncio


class MockReachabilityProbe:
    """Resolves or raises on demand.

    With ``hold=True`` every probe blocks until ``release()`` is called,
    which lets a test change the Store while polling is in flight.
    """

    def __init__(self, error: Exception | None = None, hold: bool = False):
        self.error = error
        self.probed: list[str] = []
        self._gate = asyncio.Event()
        if not hold:
            self._gate.set()

    def release(self) -> None:
        self._gate.set()

    async def wait_until_reachable(self, provider_id: str) -> None:
        self.probed.append(provider_id)
        await self._gate.wait()
        if self.error is not None:
            raise self.error
