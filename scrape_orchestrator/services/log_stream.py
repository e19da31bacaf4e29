"""
Per-job log buffering and fan-out.

Each job gets a bounded in-process buffer (oldest entries evicted) plus a set
of local subscribers. An optional pub/sub transport publishes every entry on
a per-job topic so other instances can relay it to their own subscribers.
The default NullTransport keeps everything in-process; the stream is fully
functional without Redis.

Delivery across instances is best-effort: remote subscribers may see
duplicates or out-of-order entries. Within one instance, per-job order is
the append order.
"""

import asyncio
import enum
import json
import re
import threading
import uuid
from collections import OrderedDict, deque
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import redis.asyncio as aioredis

from scrape_orchestrator.config import Settings
from scrape_orchestrator.core.datetime_utils import utc_now
from scrape_orchestrator.core.logging import get_logger

logger = get_logger(__name__)

CHANNEL_PREFIX = "job-logs"


class LogLevel(str, enum.Enum):
    """Levels shown to job observers."""

    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


_LOGURU_LEVELS = {
    LogLevel.INFO: "INFO",
    LogLevel.SUCCESS: "SUCCESS",
    LogLevel.WARN: "WARNING",
    LogLevel.ERROR: "ERROR",
}


@dataclass
class LogEntry:
    """One line of a job's log."""

    level: LogLevel
    message: str
    context: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utc_now)
    job_id: str | None = None
    origin: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "context": self.context,
            "job_id": self.job_id,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        return cls(
            level=LogLevel(data.get("level", LogLevel.INFO.value)),
            message=data.get("message", ""),
            context=data.get("context"),
            timestamp=datetime.fromisoformat(data["timestamp"])
            if data.get("timestamp")
            else utc_now(),
            job_id=data.get("job_id"),
            origin=data.get("origin"),
        )


LogHandler = Callable[[LogEntry], None]
RemoteDelivery = Callable[[str, LogEntry], None]


# =============================================================================
# Sanitization
# =============================================================================

SENSITIVE_KEYS = {
    "cpf",
    "password",
    "senha",
    "token",
    "access_token",
    "refresh_token",
    "secret",
    "cookie",
    "authorization",
    "credential",
}

_CPF_RE = re.compile(r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b")
_MASK = "***"


def _sanitize_value(key: str, value: Any) -> Any:
    if key.lower() in SENSITIVE_KEYS:
        return _MASK
    if isinstance(value, dict):
        return {k: _sanitize_value(k, v) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize_value(key, v) for v in value]
    if isinstance(value, str):
        return _CPF_RE.sub("***.***.***-**", value)
    return value


def sanitize_entry(entry: LogEntry) -> dict[str, Any]:
    """Serialize an entry with CPF numbers and sensitive context values masked."""
    data = entry.to_dict()
    data["message"] = _CPF_RE.sub("***.***.***-**", entry.message)
    if entry.context:
        data["context"] = {k: _sanitize_value(k, v) for k, v in entry.context.items()}
    data.pop("origin", None)
    return data


# =============================================================================
# Transports
# =============================================================================


class LogTransport(Protocol):
    """Cross-instance pub/sub for log entries."""

    enabled: bool

    def bind(self, deliver: RemoteDelivery) -> None:
        """Register the callback that receives entries published elsewhere."""
        ...

    async def publish(self, job_id: str, entry: LogEntry) -> None: ...

    async def watch(self, job_id: str) -> None: ...

    async def unwatch(self, job_id: str) -> None: ...

    async def close(self) -> None: ...


class NullTransport:
    """No-op transport: entries stay in this process."""

    enabled = False

    def bind(self, deliver: RemoteDelivery) -> None:
        pass

    async def publish(self, job_id: str, entry: LogEntry) -> None:
        pass

    async def watch(self, job_id: str) -> None:
        pass

    async def unwatch(self, job_id: str) -> None:
        pass

    async def close(self) -> None:
        pass


class RedisLogTransport:
    """Redis pub/sub transport publishing on ``job-logs:{job_id}``."""

    enabled = True

    def __init__(
        self,
        redis_url: str | None = None,
        instance_id: str | None = None,
        client: Any = None,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("RedisLogTransport needs a redis_url or a client")
        self._redis = client or aioredis.from_url(redis_url, decode_responses=True)
        self.instance_id = instance_id or uuid.uuid4().hex
        self._deliver: RemoteDelivery | None = None
        self._pubsub: Any = None
        self._listener: asyncio.Task[None] | None = None

    @staticmethod
    def channel(job_id: str) -> str:
        return f"{CHANNEL_PREFIX}:{job_id}"

    def bind(self, deliver: RemoteDelivery) -> None:
        self._deliver = deliver

    async def publish(self, job_id: str, entry: LogEntry) -> None:
        data = entry.to_dict()
        data["job_id"] = job_id
        data["origin"] = self.instance_id
        await self._redis.publish(self.channel(job_id), json.dumps(data, default=str))

    async def watch(self, job_id: str) -> None:
        if self._pubsub is None:
            self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel(job_id))
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen())

    async def unwatch(self, job_id: str) -> None:
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel(job_id))

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.bind(error=str(e)).warning("redis_log_listener_error")
                await asyncio.sleep(1.0)
                continue

            if not message or message.get("type") != "message":
                continue
            self.handle_message(message.get("channel"), message.get("data"))

    def handle_message(self, channel: str | bytes | None, data: str | bytes | None) -> None:
        """Decode one pub/sub message and hand it to the bound delivery callback."""
        if data is None or self._deliver is None:
            return
        if isinstance(data, bytes):
            data = data.decode()
        if isinstance(channel, bytes):
            channel = channel.decode()
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.bind(channel=channel).warning("redis_log_message_invalid")
            return

        # Our own entries are already in the local buffer
        if payload.get("origin") == self.instance_id:
            return

        job_id = payload.get("job_id") or (channel or "").removeprefix(f"{CHANNEL_PREFIX}:")
        self._deliver(job_id, LogEntry.from_dict(payload))

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        await self._redis.aclose()


# =============================================================================
# Log stream
# =============================================================================


class LogStream:
    """Bounded per-job log buffers with local subscribers and optional fan-out."""

    def __init__(
        self,
        max_entries: int = 1000,
        transport: LogTransport | None = None,
        retained_jobs: int = 100,
    ) -> None:
        self.max_entries = max_entries
        self.retained_jobs = retained_jobs
        self.transport: LogTransport = transport or NullTransport()
        self._buffers: dict[str, deque[LogEntry]] = {}
        # Finished jobs in release order; the oldest are evicted first
        self._released: OrderedDict[str, None] = OrderedDict()
        self._subscribers: dict[str, list[LogHandler]] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.transport.bind(self._deliver_remote)

    def append(self, job_id: str, entry: LogEntry) -> LogEntry:
        """Buffer an entry, notify local subscribers and publish it."""
        entry.job_id = job_id
        self._store_and_notify(job_id, entry)
        if self.transport.enabled:
            self._spawn(self.transport.publish(job_id, entry), "log_publish_failed", job_id)
        return entry

    def log(
        self,
        job_id: str,
        level: LogLevel,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> LogEntry:
        logger.bind(job_id=job_id, **(context or {})).log(_LOGURU_LEVELS[level], message)
        return self.append(job_id, LogEntry(level=level, message=message, context=context))

    def job_logger(self, job_id: str) -> "JobLogger":
        return JobLogger(self, job_id)

    def subscribe(self, job_id: str, handler: LogHandler) -> Callable[[], None]:
        """Register a handler for new entries of a job. Returns an unsubscribe callable."""
        with self._lock:
            handlers = self._subscribers.setdefault(job_id, [])
            first = not handlers
            handlers.append(handler)

        if first and self.transport.enabled:
            self._spawn(self.transport.watch(job_id), "log_watch_failed", job_id)

        unsubscribed = False

        def unsubscribe() -> None:
            nonlocal unsubscribed
            if unsubscribed:
                return
            unsubscribed = True
            with self._lock:
                remaining = self._subscribers.get(job_id, [])
                if handler in remaining:
                    remaining.remove(handler)
                last = not remaining
                if last:
                    self._subscribers.pop(job_id, None)
            if last and self.transport.enabled:
                self._spawn(self.transport.unwatch(job_id), "log_unwatch_failed", job_id)

        return unsubscribe

    def tail(self, job_id: str, n: int | None = None) -> list[LogEntry]:
        """Copy of the last n buffered entries (all of them when n is None)."""
        with self._lock:
            buffer = self._buffers.get(job_id)
            if not buffer:
                return []
            entries = list(buffer)
        if n is None:
            return entries
        return entries[-n:] if n > 0 else []

    def count(self, job_id: str) -> int:
        with self._lock:
            return len(self._buffers.get(job_id, ()))

    def clear(self, job_id: str) -> None:
        with self._lock:
            self._buffers.pop(job_id, None)
            self._released.pop(job_id, None)

    def retain(self, job_id: str) -> None:
        """Keep a job's buffer until it is released again, e.g. on a retried job."""
        with self._lock:
            self._released.pop(job_id, None)

    def release(self, job_id: str) -> None:
        """Mark a finished job's buffer as evictable.

        Only the ``retained_jobs`` most recently released buffers are kept; a
        finished job's persisted snapshot serves reads after that.
        """
        with self._lock:
            self._released.pop(job_id, None)
            self._released[job_id] = None
            while len(self._released) > self.retained_jobs:
                evicted, _ = self._released.popitem(last=False)
                self._buffers.pop(evicted, None)

    def job_ids(self) -> list[str]:
        with self._lock:
            return list(self._buffers)

    async def follow(
        self,
        job_id: str,
        include_tail: bool = True,
        heartbeat: float = 15.0,
    ) -> AsyncIterator[LogEntry | None]:
        """Async iterator over a job's entries; yields None on idle heartbeat."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[LogEntry] = asyncio.Queue()

        def handler(entry: LogEntry) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, entry)

        unsubscribe = self.subscribe(job_id, handler)
        try:
            # Entries appended after subscribing can be in both the tail and the queue
            replayed: set[int] = set()
            if include_tail:
                backlog = self.tail(job_id)
                replayed = {id(entry) for entry in backlog}
                for entry in backlog:
                    yield entry
            while True:
                try:
                    entry = await asyncio.wait_for(queue.get(), timeout=heartbeat)
                except TimeoutError:
                    yield None
                    continue
                if replayed and id(entry) in replayed:
                    continue
                yield entry
        finally:
            unsubscribe()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        await self.transport.close()

    def _deliver_remote(self, job_id: str, entry: LogEntry) -> None:
        entry.job_id = job_id
        self._store_and_notify(job_id, entry)

    def _store_and_notify(self, job_id: str, entry: LogEntry) -> None:
        with self._lock:
            buffer = self._buffers.get(job_id)
            if buffer is None:
                buffer = self._buffers[job_id] = deque(maxlen=self.max_entries)
            buffer.append(entry)
            handlers = list(self._subscribers.get(job_id, ()))

        for handler in handlers:
            try:
                handler(entry)
            except Exception as e:
                logger.bind(job_id=job_id, error=str(e)).warning("log_subscriber_failed")

    def _spawn(self, coro: Coroutine[Any, Any, Any], event: str, job_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.bind(job_id=job_id).debug(f"{event}_no_event_loop")
            return

        async def runner() -> None:
            try:
                await coro
            except Exception as e:
                logger.bind(job_id=job_id, error=str(e)).warning(event)

        task = loop.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class JobLogger:
    """Convenience wrapper binding a LogStream to one job."""

    def __init__(self, stream: LogStream, job_id: str) -> None:
        self.stream = stream
        self.job_id = job_id

    def info(self, message: str, **context: Any) -> LogEntry:
        return self.stream.log(self.job_id, LogLevel.INFO, message, context or None)

    def success(self, message: str, **context: Any) -> LogEntry:
        return self.stream.log(self.job_id, LogLevel.SUCCESS, message, context or None)

    def warn(self, message: str, **context: Any) -> LogEntry:
        return self.stream.log(self.job_id, LogLevel.WARN, message, context or None)

    def error(self, message: str, **context: Any) -> LogEntry:
        return self.stream.log(self.job_id, LogLevel.ERROR, message, context or None)


def build_log_stream(settings: Settings) -> LogStream:
    """Build the log stream, with Redis fan-out when enabled in settings."""
    transport: LogTransport = NullTransport()
    if settings.redis_log_streaming and settings.redis_url:
        transport = RedisLogTransport(redis_url=settings.redis_url)
        logger.bind(redis_url=settings.redis_url).info("redis_log_streaming_enabled")
    return LogStream(
        max_entries=settings.log_buffer_size,
        transport=transport,
        retained_jobs=settings.log_retained_jobs,
    )
