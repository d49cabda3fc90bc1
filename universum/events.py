import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventBus:
    """In-memory fan-out of workspace events for SSE subscribers."""

    def __init__(self, history_size: int = 200):
        self.subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.seq = 0
        self.recent: Deque[dict] = deque(maxlen=history_size)

    def publish(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> dict:
        self.seq += 1
        event = {
            "seq": self.seq,
            "event_type": event_type,
            "payload": dict(payload or {}),
            "created_at": utc_now(),
        }
        self.recent.append(event)
        for queue in list(self.subscribers):
            queue.put_nowait(event)
        return event

    def toast(self, message: str, level: str = "info", title: Optional[str] = None) -> dict:
        return self.publish("toast", {"message": message, "level": level, "title": title})

    def events_of(self, event_type: str) -> List[dict]:
        return [event for event in self.recent if event["event_type"] == event_type]

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.subscribers:
                self.subscribers.remove(queue)
