"""Per-connection send queue.

Each connection gets one bounded queue and one sender task. Frames are
enqueued synchronously, so two frames enqueued in order are written to
the socket in that order no matter how slow the peer is, and a slow peer
never blocks the publisher. Overflow is resolved by the configured
policy; frames lost this way are recovered by client catch-up.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from core.logging_config import get_logger


logger = get_logger(__name__)

OVERFLOW_POLICIES = {"drop_oldest", "drop_new", "disconnect"}

FailureCallback = Callable[[str, Optional[str]], Awaitable[None]]


class ConnectionOutbox:
    def __init__(
        self,
        connection_id: str,
        transport: Any,
        *,
        max_size: int = 100,
        overflow_policy: str = "drop_oldest",
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        policy = (overflow_policy or "drop_oldest").lower()
        if policy not in OVERFLOW_POLICIES:
            logger.warning("ws_send_queue_policy_invalid", policy=policy, fallback="drop_oldest")
            policy = "drop_oldest"
        self.connection_id = connection_id
        self._transport = transport
        self._policy = policy
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, int(max_size)))
        self._on_failure = on_failure
        self._task: Optional[asyncio.Task] = None
        self._failure_tasks: Set[asyncio.Task] = set()
        self._closed = False
        self.dropped = 0

    def start(self) -> None:
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(
                self._sender_loop(), name=f"ws-outbox-{self.connection_id}"
            )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_failures(self) -> int:
        return len(self._failure_tasks)

    def put(self, frame: dict) -> bool:
        """Enqueue a frame; False when it was not accepted."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            pass

        self.dropped += 1
        if self._policy == "drop_new":
            logger.warning("ws_send_queue_drop_new", connection_id=self.connection_id)
            return False
        if self._policy == "disconnect":
            logger.warning("ws_send_queue_disconnect", connection_id=self.connection_id)
            self._fail("send_queue_overflow")
            return False
        # drop_oldest
        try:
            self._queue.get_nowait()
            self._queue.task_done()
        except asyncio.QueueEmpty:
            pass
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("ws_send_queue_drop_after_trim", connection_id=self.connection_id)
            return False
        logger.warning("ws_send_queue_drop_oldest", connection_id=self.connection_id)
        return True

    async def flush(self) -> None:
        """Wait until every queued frame has been written or discarded."""
        if self._task is None:
            return
        await self._queue.join()

    def discard(self) -> None:
        """Stop accepting frames and drop whatever is still queued."""
        self._closed = True
        self._drain()

    async def aclose(self) -> None:
        self._closed = True
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain()

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    def _fail(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._drain()
        if self._on_failure is not None:
            # the loop only keeps weak references to tasks
            task = asyncio.create_task(self._on_failure(self.connection_id, reason))
            self._failure_tasks.add(task)
            task.add_done_callback(self._failure_tasks.discard)

    async def _sender_loop(self) -> None:
        try:
            while True:
                frame = await self._queue.get()
                try:
                    await self._transport.send_json(frame)
                except Exception as exc:
                    # dead socket: no retry here, the client catches up after reconnect
                    logger.warning("ws_send_failed", connection_id=self.connection_id, error=str(exc))
                    self._queue.task_done()
                    self._fail("send_failed")
                    return
                self._queue.task_done()
        except asyncio.CancelledError:  # graceful exit
            return
