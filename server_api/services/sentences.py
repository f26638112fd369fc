import asyncio
import logging
from collections import deque
from typing import Any, Callable, Dict, Optional

import requests

from ..core.config import (
    SENTENCE_API_URL,
    SENTENCE_POLL_INTERVAL_SECONDS,
    SENTENCE_QUEUE_SIZE,
    SENTENCE_REFILL_INTERVAL_SECONDS,
    SENTENCE_REQUEST_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

DEFAULT_SENTENCE: Dict[str, Any] = {
    "hitokoto": "Every day in history is worth remembering.",
    "from": "Unknown",
    "from_who": None,
}


def fetch_sentence(
    url: str = SENTENCE_API_URL,
    timeout: float = SENTENCE_REQUEST_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, dict) or not isinstance(payload.get("hitokoto"), str):
        raise ValueError("Unexpected sentence payload")
    return payload


class SentenceQueue:
    """Bounded buffer of quotes fetched ahead of time for outgoing emails.

    ``take`` never fails: it polls until the refiller has pushed something,
    and the refiller substitutes ``DEFAULT_SENTENCE`` whenever the quote API
    cannot be reached.
    """

    def __init__(
        self,
        fetcher: Callable[[], Dict[str, Any]] = fetch_sentence,
        capacity: int = SENTENCE_QUEUE_SIZE,
        poll_interval: float = SENTENCE_POLL_INTERVAL_SECONDS,
        refill_interval: float = SENTENCE_REFILL_INTERVAL_SECONDS,
    ):
        self.fetcher = fetcher
        self.capacity = capacity
        self.poll_interval = poll_interval
        self.refill_interval = refill_interval
        self._items: deque = deque()
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    async def size(self) -> int:
        async with self._lock:
            return len(self._items)

    async def put(self, item: Dict[str, Any]) -> bool:
        async with self._lock:
            if len(self._items) >= self.capacity:
                return False
            self._items.append(item)
            return True

    async def _pop(self) -> Optional[Dict[str, Any]]:
        async with self._lock:
            return self._items.popleft() if self._items else None

    async def take(self) -> Dict[str, Any]:
        while True:
            item = await self._pop()
            if item is not None:
                return item
            await asyncio.sleep(self.poll_interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def next_sentence(self) -> Dict[str, Any]:
        """Like ``take``, but fetches inline when no refiller is running."""
        if self.running:
            return await self.take()
        item = await self._pop()
        return item if item is not None else await self._fetch_one()

    async def _fetch_one(self) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(self.fetcher)
        except Exception as exc:
            logger.warning("Sentence fetch failed, using default: %s", exc)
            return dict(DEFAULT_SENTENCE)

    async def refill(self) -> int:
        needed = self.capacity - await self.size()
        added = 0
        for _ in range(max(needed, 0)):
            if await self.put(await self._fetch_one()):
                added += 1
        if added:
            logger.debug("Sentence queue refilled with %s items", added)
        return added

    async def run_forever(self) -> None:
        while True:
            try:
                await self.refill()
            except Exception:
                logger.exception("Sentence queue refill failed")
            await asyncio.sleep(self.refill_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="sentence-refill")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
