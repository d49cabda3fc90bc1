import asyncio
from typing import Optional


class TurnCancelled(Exception):
    """Raised at a suspension point once the turn's token has been set."""


class CancelToken:
    """Per-turn stop signal shared by the turn and the artifact tasks it spawns."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason or "stopped")

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes early and raises when the token is set."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
