"""Explicit cancellation tokens threaded through every generation call."""

import asyncio

from notemind.errors import GenerationCancelled


class CancelToken:
    """One-shot cancellation flag checked at each suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


def check_cancel(cancel: CancelToken | None) -> None:
    if cancel is not None:
        cancel.check()
