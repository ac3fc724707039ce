"""
Progress Observer
Publish/subscribe channels keyed by batch job id and by owner id.

Publishers (the job store) push the full row after every committed change.
Subscribers treat a message only as a hint and re-read the row, so the
stream is last-write-wins: intermediate states may be skipped but the final
state of a terminal job is always observed.
"""

import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, TYPE_CHECKING

from redis.exceptions import RedisError

from studio.core.config import settings
from studio.models.batch_job import TERMINAL_STATUSES

if TYPE_CHECKING:
    from studio.services.job_store import BatchJobStore

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "studio"


def job_channel(job_id: str) -> str:
    return f"{CHANNEL_PREFIX}:batch:{job_id}"


def owner_channel(owner_id: str) -> str:
    return f"{CHANNEL_PREFIX}:owner:{owner_id}"


class Subscription(ABC):
    """A live subscription to one or more channels."""

    @abstractmethod
    def get(self, timeout: float) -> Optional[Dict[str, Any]]:
        """Wait up to `timeout` seconds for the next payload; None on timeout."""

    @abstractmethod
    def close(self) -> None:
        """Release the subscription."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ProgressBroker(ABC):
    """Fan-out channel for batch job change notifications."""

    @abstractmethod
    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def subscribe(self, channels: List[str]) -> Subscription:
        ...

    def publish_job(self, job_row: Dict[str, Any]) -> None:
        """Publish a batch job row to its job and owner channels."""
        for channel in (job_channel(job_row["id"]), owner_channel(job_row["owner_id"])):
            try:
                self.publish(channel, job_row)
            except RedisError as e:
                # Subscribers still re-read on heartbeat
                logger.warning(f"Progress publish failed on {channel}: {e}")


# ---------------------------------------------------------------------------
# In-process broker (tests, single-process dev)
# ---------------------------------------------------------------------------

class _InMemorySubscription(Subscription):

    def __init__(self, broker: "InMemoryProgressBroker", channels: List[str]):
        self._broker = broker
        self._channels = list(channels)
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue()

    def deliver(self, payload: Dict[str, Any]) -> None:
        self._queue.put(payload)

    def get(self, timeout: float) -> Optional[Dict[str, Any]]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._broker._unsubscribe(self, self._channels)


class InMemoryProgressBroker(ProgressBroker):
    """Thread-safe broker living inside one process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Set[_InMemorySubscription]] = {}

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            targets = list(self._subscribers.get(channel, ()))
        for sub in targets:
            sub.deliver(payload)

    def subscribe(self, channels: List[str]) -> Subscription:
        sub = _InMemorySubscription(self, channels)
        with self._lock:
            for channel in channels:
                self._subscribers.setdefault(channel, set()).add(sub)
        return sub

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))

    def _unsubscribe(self, sub: _InMemorySubscription, channels: List[str]) -> None:
        with self._lock:
            for channel in channels:
                subs = self._subscribers.get(channel)
                if subs is not None:
                    subs.discard(sub)
                    if not subs:
                        del self._subscribers[channel]


# ---------------------------------------------------------------------------
# Redis pub/sub broker (production, works across API and worker processes)
# ---------------------------------------------------------------------------

class _RedisSubscription(Subscription):

    def __init__(self, pubsub):
        self._pubsub = pubsub

    def get(self, timeout: float) -> Optional[Dict[str, Any]]:
        message = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        data = message["data"]
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)

    def close(self) -> None:
        try:
            self._pubsub.unsubscribe()
        finally:
            self._pubsub.close()


class RedisProgressBroker(ProgressBroker):
    """Broker backed by Redis PUBLISH/SUBSCRIBE."""

    def __init__(self, redis_client=None):
        self._redis = redis_client

    @property
    def redis(self):
        """Lazy Redis connection."""
        if self._redis is None:
            from studio.core.redis import get_redis
            self._redis = get_redis()
        return self._redis

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        self.redis.publish(channel, json.dumps(payload, default=str))

    def subscribe(self, channels: List[str]) -> Subscription:
        pubsub = self.redis.pubsub()
        pubsub.subscribe(*channels)
        return _RedisSubscription(pubsub)


_broker: Optional[ProgressBroker] = None


def get_progress_broker() -> ProgressBroker:
    """Get the process-wide broker selected by PROGRESS_BACKEND."""
    global _broker
    if _broker is None:
        if settings.PROGRESS_BACKEND == "memory":
            _broker = InMemoryProgressBroker()
        else:
            _broker = RedisProgressBroker()
        logger.info(f"Progress broker: {type(_broker).__name__}")
    return _broker


# ---------------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------------

class ProgressObserver:
    """Read-only reactive views over batch jobs."""

    def __init__(
        self,
        store: "BatchJobStore",
        broker: ProgressBroker,
        heartbeat: Optional[float] = None,
    ):
        self.store = store
        self.broker = broker
        self.heartbeat = heartbeat if heartbeat is not None else settings.PROGRESS_HEARTBEAT_SECONDS

    def subscribe_job(self, owner_id: str, job_id: str) -> Iterator[Dict[str, Any]]:
        """
        Yield the job row now and after every change. Ends after a terminal row.

        Raises JobNotFoundError / NotAuthorizedError before subscribing.
        """
        self.store.get(job_id, owner_id)
        return self._stream(
            [job_channel(job_id)],
            read=lambda: self.store.get(job_id, owner_id).to_dict(),
            done=lambda row: row["status"] in TERMINAL_STATUSES,
        )

    def subscribe_active_jobs(self, owner_id: str) -> Iterator[List[Dict[str, Any]]]:
        """Yield the owner's non-terminal jobs now and whenever any of their jobs change."""
        return self._stream(
            [owner_channel(owner_id)],
            read=lambda: [
                job.to_dict() for job in self.store.list_for_owner(owner_id, active_only=True)
            ],
            done=lambda rows: False,
        )

    def subscribe_job_items(self, owner_id: str, job_id: str) -> Iterator[List[Dict[str, Any]]]:
        """Yield the job's artifacts now and as new ones are appended. Ends once the job is terminal."""
        self.store.get(job_id, owner_id)
        state = {"terminal": False}

        def read():
            job = self.store.get(job_id, owner_id)
            state["terminal"] = job.is_terminal
            return [image.to_dict() for image in self.store.list_artifacts(job_id, owner_id)]

        return self._stream([job_channel(job_id)], read=read, done=lambda rows: state["terminal"])

    def _stream(
        self,
        channels: List[str],
        read: Callable[[], Any],
        done: Callable[[Any], bool],
    ) -> Iterator[Any]:
        # Subscribe before the first read so no change between the two is lost
        with self.broker.subscribe(channels) as subscription:
            last = read()
            yield last
            if done(last):
                return
            while True:
                subscription.get(timeout=self.heartbeat)
                current = read()
                if current != last:
                    last = current
                    yield current
                if done(current):
                    return


_observer: Optional[ProgressObserver] = None


def get_progress_observer() -> ProgressObserver:
    """Get singleton ProgressObserver over the application job store."""
    global _observer
    if _observer is None:
        from studio.services.job_store import get_job_store

        _observer = ProgressObserver(get_job_store(), get_progress_broker())
    return _observer


__all__ = [
    "job_channel",
    "owner_channel",
    "Subscription",
    "ProgressBroker",
    "InMemoryProgressBroker",
    "RedisProgressBroker",
    "get_progress_broker",
    "ProgressObserver",
    "get_progress_observer",
]
