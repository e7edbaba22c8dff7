"""
Audit recording for access decisions.

record() never waits: entries go into a bounded in-memory buffer that a
background asyncio task drains in batches to an AuditSink. When the buffer is
full the overflow policy decides which entry is lost:

- drop_oldest: evict the oldest buffered entry (default)
- drop_newest: refuse the incoming entry

Entries carry a global sequence number so per-user chronological order is
preserved from buffer to sink. Sink failures are logged and counted; they
never reach the caller of record().
"""
import asyncio
import hashlib
import itertools
import json
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from access_engine.core import config
from access_engine.utils import get_logger


log = get_logger(__name__)


Operation = Literal["grant", "revoke", "check", "deny"]
OVERFLOW_POLICIES = ("drop_oldest", "drop_newest")


def context_fingerprint(context: Optional[Dict[str, Any]]) -> str:
    """Stable SHA-256 of a request context."""
    canonical = json.dumps(context or {}, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditEntry(BaseModel):
    """Immutable audit record of one decision or grant change."""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[int]
    operation: Operation
    result: bool
    reason: str = ""
    resource: Optional[str] = None
    resource_id: Optional[int] = None
    action: Optional[str] = None
    action_id: Optional[int] = None
    permission_id: Optional[int] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    context_fingerprint: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sequence: int = 0

    @classmethod
    def build(cls, context: Optional[Dict[str, Any]] = None, **fields: Any) -> "AuditEntry":
        """Create an entry, snapshotting the context and its fingerprint."""
        snapshot = json.loads(json.dumps(context or {}, default=str))
        return cls(context=snapshot, context_fingerprint=context_fingerprint(snapshot), **fields)


@runtime_checkable
class AuditSink(Protocol):
    """Durable destination for audit entries."""

    async def write_batch(self, entries: List[AuditEntry]) -> None: ...

    async def query(self, user_id: int, limit: int) -> List[AuditEntry]: ...


class InMemoryAuditSink:
    """Audit sink that keeps entries in a list (tests, embedded use)."""

    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []

    async def write_batch(self, entries: List[AuditEntry]) -> None:
        self.entries.extend(entries)

    async def query(self, user_id: int, limit: int) -> List[AuditEntry]:
        matching = [e for e in reversed(self.entries) if e.user_id == user_id]
        return matching[:limit] if limit > 0 else matching


class AuditRecorder:
    """
    Buffered, fire-and-forget audit recorder.

    Usage:
        recorder = AuditRecorder(sink)
        await recorder.start()
        recorder.record(entry)            # never blocks
        await recorder.query(user_id, 20)
        await recorder.stop()             # drains the buffer
    """

    def __init__(
        self,
        sink: AuditSink,
        max_size: int = config.AUDIT_QUEUE_SIZE,
        batch_size: int = config.AUDIT_BATCH_SIZE,
        overflow_policy: str = config.AUDIT_OVERFLOW_POLICY,
    ):
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown audit overflow policy: {overflow_policy!r} (valid: {OVERFLOW_POLICIES})")
        if max_size < 1 or batch_size < 1:
            raise ValueError("Audit queue size and batch size must be positive")
        self._sink = sink
        self._max_size = max_size
        self._batch_size = batch_size
        self.overflow_policy = overflow_policy

        self._buffer: deque[AuditEntry] = deque()
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._write_lock = asyncio.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

        self.dropped = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    # -- Producer side ---------------------------------------------------------

    def record(self, entry: AuditEntry) -> None:
        """Buffer an entry. Safe to call from any thread; never blocks on the sink."""
        with self._lock:
            entry = entry.model_copy(update={"sequence": next(self._sequence)})
            if len(self._buffer) >= self._max_size:
                self.dropped += 1
                if self.overflow_policy == "drop_newest":
                    log.warning("Audit buffer full, dropping entry for user %s", entry.user_id)
                    return
                evicted = self._buffer.popleft()
                log.warning("Audit buffer full, dropping oldest entry for user %s", evicted.user_id)
            self._buffer.append(entry)
        self._notify()

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wakeup.set()
        else:
            loop.call_soon_threadsafe(wakeup.set)

    # -- Consumer side ---------------------------------------------------------

    async def start(self) -> None:
        """Start the background consumer on the running loop."""
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="audit-recorder")
        if self.pending:
            self._wakeup.set()
        log.info("Audit recorder started (policy=%s, max_size=%d)", self.overflow_policy, self._max_size)

    async def stop(self) -> None:
        """Stop the consumer after draining everything buffered so far."""
        if self._task is None:
            await self.flush()
            return
        self._stopping = True
        self._wakeup.set()
        await self._task
        self._task = None
        self._loop = None
        self._wakeup = None
        log.info("Audit recorder stopped (dropped=%d, failed=%d)", self.dropped, self.failed)

    async def flush(self) -> None:
        """Write every buffered entry now."""
        while await self._write_next_batch():
            pass

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.flush()
            if self._stopping:
                return

    async def _write_next_batch(self) -> bool:
        async with self._write_lock:
            with self._lock:
                batch = [self._buffer.popleft() for _ in range(min(self._batch_size, len(self._buffer)))]
            if not batch:
                return False
            try:
                await self._sink.write_batch(batch)
            except Exception:
                self.failed += len(batch)
                log.error("Failed to write %d audit entries", len(batch), exc_info=True)
            return True

    # -- Queries ---------------------------------------------------------------

    async def query(self, user_id: int, limit: int = 50) -> List[AuditEntry]:
        """Entries for a user, most recent first, including ones not yet written."""
        async with self._write_lock:
            persisted = await self._sink.query(user_id, limit)
            with self._lock:
                pending = [e for e in self._buffer if e.user_id == user_id]
        pending.reverse()
        merged = pending + persisted
        return merged[:limit] if limit > 0 else merged
