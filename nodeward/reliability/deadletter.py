"""Bounded dead letter store for operations that exhausted recovery.

An observability sink, not a retry source: nothing replays entries
automatically. Listeners are notified once per new entry, outside the
store lock, fire-and-forget.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from loguru import logger

from nodeward.core.exceptions import NodewardError

type Listener = Callable[[FailedOperation], object]

log = logger.bind(component="dead-letter")


class DeadLetterQueueFullError(NodewardError):
    """The store is at capacity; the entry was not recorded."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        super().__init__(f"dead letter queue is full (capacity={capacity})")


@dataclass(frozen=True, slots=True)
class FailedOperation:
    """An operation that ultimately failed.

    ``timestamp`` is stamped by :meth:`DeadLetterStore.add`.
    """

    operation_type: str
    error: BaseException
    payload: Any = None
    retry_count: int = 0
    metadata: MappingProxyType[str, str] = field(default_factory=lambda: MappingProxyType({}))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


class DeadLetterStore:
    """Capacity-bounded mapping from operation ID to FailedOperation."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._lock = threading.Lock()
        self._operations: dict[str, FailedOperation] = {}
        self._listeners: list[Listener] = []
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, op: FailedOperation) -> FailedOperation:
        """Record ``op`` and notify listeners.

        Returns the stored (timestamped) entry.

        Raises:
            DeadLetterQueueFullError: The store already holds ``capacity`` entries.
        """
        with self._lock:
            if len(self._operations) >= self._capacity:
                raise DeadLetterQueueFullError(self._capacity)
            stored = replace(op, timestamp=datetime.now(UTC))
            self._operations[stored.id] = stored
            listeners = tuple(self._listeners)

        for listener in listeners:
            self._dispatch(listener, stored)
        return stored

    def get(self, op_id: str) -> FailedOperation | None:
        with self._lock:
            return self._operations.get(op_id)

    def remove(self, op_id: str) -> None:
        with self._lock:
            self._operations.pop(op_id, None)

    def clear(self) -> None:
        with self._lock:
            self._operations.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._operations)

    def __len__(self) -> int:
        return self.size()

    def list(self) -> list[FailedOperation]:
        with self._lock:
            return list(self._operations.values())

    def list_by_type(self, operation_type: str) -> list[FailedOperation]:
        with self._lock:
            return [op for op in self._operations.values() if op.operation_type == operation_type]

    def list_oldest(self, limit: int) -> list[FailedOperation]:
        """Entries ordered by timestamp, oldest first, at most ``limit``."""
        with self._lock:
            ops = sorted(self._operations.values(), key=lambda op: op.timestamp or datetime.min)
        return ops[: max(limit, 0)]

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    # ─── Notification ────────────────────────────────────────────────

    def _dispatch(self, listener: Listener, op: FailedOperation) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            threading.Thread(
                target=self._notify_sync, args=(listener, op),
                name="dead-letter-listener", daemon=True,
            ).start()
            return
        task = loop.create_task(self._notify(listener, op))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _notify(self, listener: Listener, op: FailedOperation) -> None:
        try:
            result = listener(op)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("Dead letter listener failed for {op_id}", op_id=op.id)

    def _notify_sync(self, listener: Listener, op: FailedOperation) -> None:
        try:
            result = listener(op)
            if inspect.isawaitable(result):
                asyncio.run(_await(result))
        except Exception:
            log.exception("Dead letter listener failed for {op_id}", op_id=op.id)

    async def drain_listeners(self) -> None:
        """Wait for in-flight listener notifications scheduled on this loop."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


async def _await(awaitable: Any) -> None:
    await awaitable
