"""
Build Event Stream
==================

Delivers PhaseChanged, LogLine and ProgressUpdate events to an optional
listener without ever blocking the build.

DELIVERY RULES:
===============
- Phase changes and log lines are queued without bound and never dropped
- Progress is a single slot: while an update is still waiting, a newer
  one replaces it, so a slow listener only sees the latest value
- The listener may be a plain function or a coroutine function
"""

from __future__ import annotations
from typing import Any, Callable, Optional
import asyncio
import inspect

from ..contracts.events import BuildEvent, ProgressUpdate


_PROGRESS_MARK = object()
_CLOSE_MARK = object()

Listener = Callable[[BuildEvent], Any]


class EventStream:
    """One dispatcher task per build session."""

    def __init__(self, listener: Optional[Listener] = None):
        self._listener = listener
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending_progress: Optional[ProgressUpdate] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._delivered = 0
        self._coalesced = 0
        self._listener_error: Optional[BaseException] = None

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def coalesced(self) -> int:
        """Progress updates replaced before delivery."""
        return self._coalesced

    @property
    def listener_error(self) -> Optional[BaseException]:
        return self._listener_error

    def start(self):
        if self._listener is not None and self._dispatcher is None:
            self._dispatcher = asyncio.ensure_future(self._dispatch())

    def publish(self, event: BuildEvent):
        if self._listener is None:
            return
        if isinstance(event, ProgressUpdate):
            if self._pending_progress is not None:
                self._coalesced += 1
                self._pending_progress = event
                return
            self._pending_progress = event
            self._queue.put_nowait(_PROGRESS_MARK)
            return
        self._queue.put_nowait(event)

    async def close(self):
        """Deliver everything still queued, then stop the dispatcher."""
        if self._dispatcher is None:
            return
        self._queue.put_nowait(_CLOSE_MARK)
        await self._dispatcher
        self._dispatcher = None

    async def _dispatch(self):
        while True:
            item = await self._queue.get()
            if item is _CLOSE_MARK:
                return
            if item is _PROGRESS_MARK:
                item, self._pending_progress = self._pending_progress, None
            if self._listener_error is not None:
                continue
            try:
                result = self._listener(item)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A broken listener stops receiving events; the build goes on
                self._listener_error = e
                continue
            self._delivered += 1
