"""Bidirectional message channel between the agent and its UI.

Outbound messages are plain dicts with a ``type`` key. Until the UI has
signalled readiness, outbound messages are queued and flushed in order
once ``set_ready()`` is called. Requests that expect an answer carry a
generated ``id``; the matching inbound reply settles the awaiting
future exactly once.
"""

import asyncio
import itertools
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from .logger import get_logger

log = get_logger("channel")

Transport = Callable[[Dict[str, Any]], None]


class UIChannel:
    """Queue-until-ready outbound channel with id-correlated requests."""

    def __init__(self, transport: Optional[Transport] = None, ready: bool = False):
        self._transport = transport
        self._ready = ready and transport is not None
        self._queue: Deque[Dict[str, Any]] = deque()
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)

    @property
    def ready(self) -> bool:
        return self._ready

    def attach(self, transport: Transport) -> None:
        """Connect (or replace) the UI side. Readiness must be signalled again."""
        self._transport = transport
        self._ready = False

    def set_ready(self) -> None:
        """Mark the UI ready and flush everything queued so far."""
        if self._transport is None:
            return
        self._ready = True
        while self._queue and self._ready:
            self._deliver(self._queue.popleft())

    def post(self, message: Dict[str, Any]) -> None:
        if self._ready and self._transport is not None:
            self._deliver(message)
        else:
            self._queue.append(message)

    def _deliver(self, message: Dict[str, Any]) -> None:
        try:
            self._transport(message)
        except Exception as e:
            # the UI went away; hold the message until it reconnects
            log.warning("UI transport failed (%s); queueing %s", e, message.get("type"))
            self._ready = False
            self._queue.appendleft(message)

    def new_id(self, prefix: str = "req") -> str:
        return f"{prefix}_{next(self._ids)}"

    async def request(self, message: Dict[str, Any], prefix: str = "req") -> Any:
        """Post ``message`` with a fresh id and wait for ``resolve(id, value)``."""
        request_id = message.get("id") or self.new_id(prefix)
        message = dict(message, id=request_id)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self.post(message)
        try:
            return await future
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, value: Any) -> bool:
        """Settle a pending request; returns False for unknown or settled ids."""
        future = self._pending.pop(str(request_id or "").strip(), None)
        if future is None or future.done():
            return False
        future.set_result(value)
        return True
