import os
import queue
import logging
import threading
import redis
from typing import Dict, List, Optional
from .events import Event

logger = logging.getLogger(__name__)

ADMIN_CHANNEL = "admin:registrations"


def availability_channel(tournament_id: str) -> str:
    return f"tournament:{tournament_id}:availability"


class PubSubUnavailable(Exception):
    """The push channel cannot be reached; callers fall back to direct reads."""


class BasePubSub:
    def publish(self, channel: str, event: Event) -> int:
        raise NotImplementedError

    def listen(self, channel: str):
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def publish_availability(self, tournament_id: str, event: Event) -> int:
        return self.publish(availability_channel(tournament_id), event)

    def publish_admin_event(self, event: Event) -> int:
        return self.publish(ADMIN_CHANNEL, event)

    def listen_availability(self, tournament_id: str):
        return self.listen(availability_channel(tournament_id))


class PubSubClient(BasePubSub):
    """Redis-backed channels. Every listener gets its own pub/sub connection."""

    def __init__(self, redis_url: str = None, redis_client: redis.Redis = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        self._listen_redis = redis_client

    def publish(self, channel: str, event: Event) -> int:
        try:
            return self.redis.publish(channel, event.to_json())
        except redis.exceptions.RedisError as e:
            raise PubSubUnavailable(f"Publish to {channel} failed: {e}") from e

    def listen(self, channel: str) -> "RedisListener":
        try:
            if self._listen_redis is None:
                # Listeners block on reads, so they must not inherit the short socket timeout
                self._listen_redis = redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_timeout=None,
                    socket_connect_timeout=5
                )
            pubsub = self._listen_redis.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(channel)
        except redis.exceptions.RedisError as e:
            raise PubSubUnavailable(f"Subscribe to {channel} failed: {e}") from e
        return RedisListener(channel, pubsub)

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.exceptions.RedisError:
            return False


class RedisListener:
    def __init__(self, channel: str, pubsub):
        self.channel = channel
        self._pubsub = pubsub

    def get(self, timeout: float = 1.0) -> Optional[Event]:
        try:
            message = self._pubsub.get_message(timeout=timeout)
        except redis.exceptions.RedisError as e:
            raise PubSubUnavailable(f"Lost subscription to {self.channel}: {e}") from e

        if not message or message.get('type') != 'message':
            return None
        try:
            return Event.from_json(message['data'])
        except (ValueError, KeyError) as e:
            logger.warning(f"Dropping malformed message on {self.channel}: {e}")
            return None

    def close(self):
        try:
            self._pubsub.close()
        except redis.exceptions.RedisError as e:
            logger.debug(f"Error closing subscription to {self.channel}: {e}")


class LocalPubSub(BasePubSub):
    """
    In-process fan-out for single-process deployments and tests.

    Each listener owns a bounded queue. Publishing never waits on a
    listener: when a queue is full its oldest message is discarded.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._listeners: Dict[str, List["LocalListener"]] = {}

    def publish(self, channel: str, event: Event) -> int:
        with self._lock:
            listeners = list(self._listeners.get(channel, ()))
        for listener in listeners:
            listener.deliver(event)
        return len(listeners)

    def listen(self, channel: str) -> "LocalListener":
        listener = LocalListener(self, channel, self.queue_size)
        with self._lock:
            self._listeners.setdefault(channel, []).append(listener)
        return listener

    def ping(self) -> bool:
        return True

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._listeners.get(channel, ()))

    def _remove(self, listener: "LocalListener"):
        with self._lock:
            listeners = self._listeners.get(listener.channel, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(listener.channel, None)


class LocalListener:
    def __init__(self, hub: LocalPubSub, channel: str, queue_size: int):
        self.channel = channel
        self.dropped = 0
        self._hub = hub
        self._queue = queue.Queue(maxsize=queue_size)

    def deliver(self, event: Event):
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: float = 1.0) -> Optional[Event]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self):
        self._hub._remove(self)
