"""Task message queuing with an in-memory, tenant-fair implementation.

Handlers are coroutines taking one message: returning acknowledges the
message, raising asks for a retry. Consumers run until they are cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from agentforge.model import SQSMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SQSMessage], Awaitable[None]]

DEFAULT_RETRY_BACKOFF = 0.25
DEFAULT_DEDUPE_WINDOW = 120.0
_RATE_WINDOW = 60.0
_MAX_ALERTS = 100


class QueueError(Exception):
    """A message could not be accepted or consumed."""


class Queue(Protocol):
    """Interface for publishing and consuming task messages."""

    async def enqueue(self, msg: SQSMessage) -> None:
        """Publish a task pointer message."""

    async def start_consumer(self, handler: MessageHandler) -> None:
        """Consume messages, calling handler for each, until cancelled."""


def normalize_tenant(tenant_id: str) -> str:
    """Return the tenant id, or "default" when it is empty."""
    return tenant_id or "default"


def message_key(msg: SQSMessage | None) -> str:
    """Return the key that identifies a message for deduplication."""
    if msg is None:
        return ""
    tenant_id = normalize_tenant(msg.tenant_id)
    if msg.dedupe_key:
        return f"{tenant_id}#{msg.dedupe_key}"
    return f"{tenant_id}#{msg.task_id}#{msg.run_id}"


@dataclass(frozen=True)
class AdmissionInfo:
    """What a tenant manager is told when a message asks to be queued."""

    message_key: str
    estimated_tokens: int = 0
    estimated_cost: float = 0.0


@dataclass(frozen=True)
class CompletionInfo:
    """What a tenant manager is told when a delivery attempt ends."""

    message_key: str
    tokens_used: int = 0
    cost_used: float = 0.0
    failed: bool = False
    was_accepted: bool = False


@dataclass
class _TenantState:
    queued: int = 0
    running: int = 0
    admissions: deque = field(default_factory=deque)
    consecutive_errors: int = 0
    breaker_open_until: float = 0.0
    tokens_used: int = 0
    cost_used: float = 0.0
    completed: int = 0
    failed: int = 0
    dead_letters: int = 0
    alerts: deque = field(default_factory=lambda: deque(maxlen=_MAX_ALERTS))


class TenantManager:
    """Per-tenant admission limits, rate limits, budgets, breakers and alerts.

    A limit of zero or less disables that check. Times are in seconds.
    """

    def __init__(
        self,
        *,
        max_running: int = 8,
        max_queued: int = 2048,
        rate_limit_per_minute: int = 1200,
        max_consecutive_errors: int = 8,
        breaker_cooldown: float = 30.0,
        token_budget: int = 0,
        cost_budget: float = 0.0,
    ) -> None:
        self.max_running = max_running
        self.max_queued = max_queued
        self.rate_limit_per_minute = rate_limit_per_minute
        self.max_consecutive_errors = max_consecutive_errors
        self.breaker_cooldown = breaker_cooldown
        self.token_budget = token_budget
        self.cost_budget = cost_budget
        self._lock = threading.Lock()
        self._tenants: dict[str, _TenantState] = {}

    def _state(self, tenant_id: str) -> _TenantState:
        return self._tenants.setdefault(tenant_id, _TenantState())

    def _alert(self, state: _TenantState, tenant_id: str, kind: str, message: str) -> None:
        state.alerts.append(
            {
                "tenant_id": tenant_id,
                "kind": kind,
                "message": message,
                "at": datetime.now(timezone.utc),
            }
        )

    def _reject(self, state: _TenantState, tenant_id: str, kind: str, message: str) -> None:
        self._alert(state, tenant_id, kind, message)
        raise QueueError(f"tenant {tenant_id}: {message}")

    def try_enqueue(self, tenant_id: str, info: AdmissionInfo) -> None:
        """Admit one message for tenant_id or raise QueueError."""
        now = time.monotonic()
        with self._lock:
            state = self._state(tenant_id)
            if self.max_queued > 0 and state.queued >= self.max_queued:
                self._reject(state, tenant_id, "queued_limit",
                             f"queued limit reached ({self.max_queued})")
            while state.admissions and now - state.admissions[0] > _RATE_WINDOW:
                state.admissions.popleft()
            if self.rate_limit_per_minute > 0 and len(state.admissions) >= self.rate_limit_per_minute:
                self._reject(state, tenant_id, "rate_limit",
                             f"rate limit reached ({self.rate_limit_per_minute}/min)")
            if self.token_budget > 0 and state.tokens_used + info.estimated_tokens > self.token_budget:
                self._reject(state, tenant_id, "token_budget",
                             f"token budget exceeded ({self.token_budget})")
            if self.cost_budget > 0 and state.cost_used + info.estimated_cost > self.cost_budget:
                self._reject(state, tenant_id, "cost_budget",
                             f"cost budget exceeded ({self.cost_budget})")
            state.queued += 1
            state.admissions.append(now)

    def cancel_enqueue(self, tenant_id: str, key: str) -> None:
        """Release an admission whose message never reached the queue."""
        with self._lock:
            state = self._state(tenant_id)
            state.queued = max(0, state.queued - 1)
            if state.admissions:
                state.admissions.pop()

    def try_start_run(self, tenant_id: str) -> bool:
        """Start a run for tenant_id if its limits and breaker allow it."""
        now = time.monotonic()
        with self._lock:
            state = self._state(tenant_id)
            if state.breaker_open_until > now:
                return False
            if self.max_running > 0 and state.running >= self.max_running:
                return False
            state.running += 1
            state.queued = max(0, state.queued - 1)
            return True

    def complete_run(self, tenant_id: str, info: CompletionInfo) -> None:
        """Record the end of a run and update error and usage accounting."""
        with self._lock:
            state = self._state(tenant_id)
            state.running = max(0, state.running - 1)
            if info.failed:
                state.failed += 1
                state.consecutive_errors += 1
                if 0 < self.max_consecutive_errors <= state.consecutive_errors:
                    state.breaker_open_until = time.monotonic() + self.breaker_cooldown
                    self._alert(state, tenant_id, "breaker_open",
                                f"{state.consecutive_errors} consecutive errors")
                    state.consecutive_errors = 0
            else:
                state.completed += 1
                state.consecutive_errors = 0
            if info.was_accepted:
                state.tokens_used += info.tokens_used
                state.cost_used += info.cost_used

    def mark_dead_letter(self, tenant_id: str, key: str) -> None:
        """Record that a message was moved to the dead-letter queue."""
        with self._lock:
            state = self._state(tenant_id)
            state.dead_letters += 1
            self._alert(state, tenant_id, "dead_letter", f"message {key} dead-lettered")

    def _snapshot_locked(self, tenant_id: str, state: _TenantState) -> dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "queued": state.queued,
            "running": state.running,
            "tokens_used": state.tokens_used,
            "cost_used": state.cost_used,
            "completed": state.completed,
            "failed": state.failed,
            "dead_letters": state.dead_letters,
            "consecutive_errors": state.consecutive_errors,
            "breaker_open": state.breaker_open_until > time.monotonic(),
        }

    def snapshots(self) -> list[dict[str, Any]]:
        """Return runtime snapshots of every known tenant, sorted by id."""
        with self._lock:
            return [self._snapshot_locked(tid, self._tenants[tid]) for tid in sorted(self._tenants)]

    def snapshot(self, tenant_id: str) -> dict[str, Any]:
        """Return the runtime snapshot of one tenant."""
        with self._lock:
            return self._snapshot_locked(tenant_id, self._tenants.get(tenant_id, _TenantState()))

    def alerts(self, tenant_id: str, limit: int) -> list[dict[str, Any]]:
        """Return the most recent alerts of a tenant, oldest first; limit <= 0 means all."""
        with self._lock:
            state = self._tenants.get(tenant_id)
            items = [] if state is None else list(state.alerts)
        if limit > 0:
            items = items[-limit:]
        return [dict(item) for item in items]


@dataclass
class MemoryQueueConfig:
    """Settings for MemoryQueue; durations are in seconds."""

    buffer_size: int = 100
    max_workers: int = 1
    max_attempts: int = 3
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    dedupe_window: float = DEFAULT_DEDUPE_WINDOW
    tenant_manager: TenantManager | None = None


class MemoryQueue:
    """In-memory queue with round-robin scheduling across tenants."""

    def __init__(self, config: MemoryQueueConfig | None = None) -> None:
        cfg = replace(config) if config is not None else MemoryQueueConfig()
        if cfg.buffer_size <= 0:
            cfg.buffer_size = 100
        if cfg.max_workers <= 0:
            cfg.max_workers = 1
        if cfg.max_attempts <= 0:
            cfg.max_attempts = 3
        if cfg.retry_backoff <= 0:
            cfg.retry_backoff = DEFAULT_RETRY_BACKOFF
        if cfg.dedupe_window <= 0:
            cfg.dedupe_window = DEFAULT_DEDUPE_WINDOW
        if cfg.tenant_manager is None:
            cfg.tenant_manager = TenantManager()
        self.config = cfg
        self._manager: TenantManager = cfg.tenant_manager
        self._channel: asyncio.Queue[SQSMessage] = asyncio.Queue(maxsize=cfg.buffer_size)
        self._pending: dict[str, deque[SQSMessage]] = {}
        self._tenant_order: list[str] = []
        self._next_tenant = 0
        self._in_queue: set[str] = set()
        self._in_flight: set[str] = set()
        self._recent: dict[str, float] = {}
        self._dlq: list[SQSMessage] = []
        self._retry_tasks: set[asyncio.Task] = set()

    @classmethod
    def with_buffer_size(cls, buffer_size: int) -> MemoryQueue:
        """Create a queue with default settings and the given buffer size."""
        cfg = MemoryQueueConfig()
        if buffer_size > 0:
            cfg.buffer_size = buffer_size
        return cls(cfg)

    async def health_check(self) -> None:
        """Always succeeds for the in-memory queue."""

    async def enqueue(self, msg: SQSMessage) -> None:
        """Accept a message unless an identical one is queued, running or recently done."""
        if msg is None:
            raise QueueError("queue: enqueue: nil message")
        cp = replace(msg)
        if cp.attempt <= 0:
            cp.attempt = 1
        tenant_id = normalize_tenant(cp.tenant_id)
        cp.tenant_id = tenant_id
        key = message_key(cp)
        now = time.monotonic()

        self._prune_recent(now)
        if key in self._in_queue or key in self._in_flight:
            return
        done_at = self._recent.get(key)
        if done_at is not None and now - done_at <= self.config.dedupe_window:
            return
        self._in_queue.add(key)

        try:
            self._manager.try_enqueue(
                tenant_id,
                AdmissionInfo(
                    message_key=key,
                    estimated_tokens=cp.estimated_tokens,
                    estimated_cost=cp.estimated_cost,
                ),
            )
        except BaseException:
            self._in_queue.discard(key)
            raise

        try:
            await self._channel.put(cp)
        except BaseException:
            self._in_queue.discard(key)
            self._manager.cancel_enqueue(tenant_id, key)
            raise

    async def start_consumer(self, handler: MessageHandler) -> None:
        """Dispatch messages to handler with the configured workers until cancelled."""
        if handler is None:
            raise QueueError("queue: nil handler")
        tasks = [asyncio.create_task(self._ingress_loop())]
        tasks.extend(
            asyncio.create_task(self._worker_loop(handler))
            for _ in range(self.config.max_workers)
        )
        try:
            await asyncio.gather(*tasks)
        finally:
            pending = tasks + list(self._retry_tasks)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def dead_letters(self) -> list[SQSMessage]:
        """Return copies of the messages in the dead-letter queue."""
        return [replace(msg) for msg in self._dlq]

    async def redrive_dead_letters(self, limit: int) -> int:
        """Re-enqueue up to limit dead letters (all if limit <= 0) and return the count."""
        if limit <= 0 or limit > len(self._dlq):
            limit = len(self._dlq)
        batch = [replace(msg) for msg in self._dlq[:limit]]
        self._dlq = self._dlq[limit:]

        count = 0
        for msg in batch:
            msg.attempt = 1
            try:
                await self.enqueue(msg)
            except BaseException:
                self._dlq.append(replace(msg))
                raise
            count += 1
        return count

    def tenant_snapshots(self) -> list[dict[str, Any]]:
        """Return runtime snapshots for all tenants."""
        return self._manager.snapshots()

    def tenant_snapshot(self, tenant_id: str) -> dict[str, Any]:
        """Return the runtime snapshot of one tenant."""
        return self._manager.snapshot(normalize_tenant(tenant_id))

    def tenant_alerts(self, tenant_id: str, limit: int) -> list[dict[str, Any]]:
        """Return recent alerts for one tenant."""
        return self._manager.alerts(normalize_tenant(tenant_id), limit)

    async def _ingress_loop(self) -> None:
        while True:
            self._add_pending(await self._channel.get())
            # Drain the buffer in one batch so workers see a stable pending set.
            while not self._channel.empty():
                self._add_pending(self._channel.get_nowait())

    async def _worker_loop(self, handler: MessageHandler) -> None:
        while True:
            msg = await self._next_dispatchable()
            error: Exception | None = None
            try:
                await handler(replace(msg))
            except Exception as exc:
                error = exc
            self._finish_attempt(msg, error)

    def _add_pending(self, msg: SQSMessage) -> None:
        tenant_id = normalize_tenant(msg.tenant_id)
        if tenant_id not in self._pending:
            self._tenant_order.append(tenant_id)
            self._pending[tenant_id] = deque()
        self._pending[tenant_id].append(replace(msg))

    async def _next_dispatchable(self) -> SQSMessage:
        while True:
            msg, had_pending = self._pop_eligible()
            if msg is not None:
                return msg
            # Pending work blocked by tenant limits waits longer than an idle poll.
            await asyncio.sleep(0.1 if had_pending else 0.02)

    def _pop_eligible(self) -> tuple[SQSMessage | None, bool]:
        if not self._tenant_order:
            return None, False

        checked = 0
        while self._tenant_order and checked < len(self._tenant_order):
            idx = self._next_tenant % len(self._tenant_order)
            tenant_id = self._tenant_order[idx]
            tenant_queue = self._pending.get(tenant_id)
            if not tenant_queue:
                self._pending.pop(tenant_id, None)
                self._remove_tenant(idx)
                continue

            if not self._manager.try_start_run(tenant_id):
                self._next_tenant = (idx + 1) % len(self._tenant_order)
                checked += 1
                continue

            msg = tenant_queue.popleft()
            if not tenant_queue:
                del self._pending[tenant_id]
                self._remove_tenant(idx)
            else:
                self._next_tenant = (idx + 1) % len(self._tenant_order)

            key = message_key(msg)
            self._in_queue.discard(key)
            self._in_flight.add(key)
            return msg, True

        return None, True

    def _remove_tenant(self, idx: int) -> None:
        if not 0 <= idx < len(self._tenant_order):
            return
        del self._tenant_order[idx]
        if not self._tenant_order or self._next_tenant >= len(self._tenant_order):
            self._next_tenant = 0

    def _finish_attempt(self, msg: SQSMessage, error: Exception | None) -> None:
        key = message_key(msg)
        final_failure = error is not None and msg.attempt >= self.config.max_attempts

        self._manager.complete_run(
            msg.tenant_id,
            CompletionInfo(
                message_key=key,
                tokens_used=msg.estimated_tokens,
                cost_used=msg.estimated_cost,
                failed=error is not None,
                was_accepted=error is None or final_failure,
            ),
        )
        if final_failure:
            self._manager.mark_dead_letter(msg.tenant_id, key)

        self._in_flight.discard(key)
        now = time.monotonic()
        if error is None or final_failure:
            self._recent[key] = now
        self._prune_recent(now)
        if final_failure:
            self._dlq.append(replace(msg))

        if error is None:
            return
        if final_failure:
            logger.warning(
                "queue: moved message to DLQ after %d attempts: task=%s run=%s err=%s",
                msg.attempt, msg.task_id, msg.run_id, error,
            )
            return

        retry = replace(msg, attempt=msg.attempt + 1)
        delay = self.config.retry_backoff * (retry.attempt - 1)
        if delay <= 0:
            delay = self.config.retry_backoff
        task = asyncio.create_task(self._retry_later(retry, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _retry_later(self, msg: SQSMessage, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.enqueue(msg)
        except QueueError as exc:
            logger.warning(
                "queue: retry enqueue failed task=%s run=%s attempt=%d: %s",
                msg.task_id, msg.run_id, msg.attempt, exc,
            )

    def _prune_recent(self, now: float) -> None:
        window = self.config.dedupe_window
        expired = [key for key, ts in self._recent.items() if now - ts > window]
        for key in expired:
            del self._recent[key]