import time
import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from sqlalchemy import func

from shared.events import Event, EventType, availability_event
from shared.pubsub import BasePubSub, PubSubUnavailable
from .ledger import HOLDING_VALUES
from .models import db, Registration, Tournament, TournamentKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Availability:
    capacity: int
    filled: int
    remaining: int
    version: int = 0

    @classmethod
    def from_counts(cls, capacity: int, filled: int, version: int = 0) -> "Availability":
        return cls(capacity=capacity, filled=filled, remaining=capacity - filled, version=version)

    @classmethod
    def from_event(cls, event: Event) -> "Availability":
        data = event.data
        return cls(
            capacity=data['capacity'],
            filled=data['filled'],
            remaining=data['remaining'],
            version=data.get('version', 0)
        )

    def to_dict(self):
        return {
            'capacity': self.capacity,
            'filled': self.filled,
            'remaining': self.remaining,
            'version': self.version,
        }


class AvailabilityFeed:
    """
    Live slot counts per tournament.

    Writers call publish() after their transaction commits. Readers either
    take a point-in-time availability() or subscribe() for pushed updates.
    """

    def __init__(self, pubsub: Optional[BasePubSub] = None, poll_interval: float = 5.0):
        self.pubsub = pubsub
        self.poll_interval = poll_interval

    def availability(self, tournament_key) -> Optional[Availability]:
        """Read capacity, filled slots and version in a single statement."""
        key = TournamentKey.parse(tournament_key)
        if key is None:
            return None

        filled = db.session.query(func.count(Registration.id)).filter(
            Registration.tournament_id == Tournament.id,
            Registration.status.in_(HOLDING_VALUES)
        ).correlate(Tournament).scalar_subquery()

        row = db.session.query(
            Tournament.capacity,
            Tournament.availability_version,
            filled.label('filled')
        ).filter(
            Tournament.game == key.game.value,
            Tournament.mode == key.mode.value
        ).first()

        if row is None:
            return None
        return Availability.from_counts(row.capacity, row.filled or 0, row.availability_version or 0)

    def publish(self, tournament_id: str, availability: Availability) -> bool:
        """Push a triple to subscribers. Failures are logged, never raised."""
        if self.pubsub is None or availability is None:
            return False

        event = availability_event(
            tournament_id,
            availability.capacity,
            availability.filled,
            availability.remaining,
            availability.version
        )
        try:
            self.pubsub.publish_availability(tournament_id, event)
            return True
        except PubSubUnavailable as e:
            logger.warning(f"Availability push for {tournament_id} skipped, subscribers will poll: {e}")
            return False

    def refresh(self, tournament_key) -> Optional[Availability]:
        """Re-read availability and push it."""
        availability = self.availability(tournament_key)
        if availability is not None:
            self.publish(str(TournamentKey.parse(tournament_key)), availability)
        return availability

    def subscribe(
        self,
        tournament_key,
        snapshot_fn: Callable[[], Optional[Availability]] = None
    ) -> "FeedSubscription":
        """
        Open a subscription. The first get() returns the current snapshot,
        later calls return newer pushed triples. Without a reachable push
        channel the subscription polls instead.
        """
        key = TournamentKey.parse(tournament_key)
        if key is None:
            raise ValueError(f"Unknown tournament key: {tournament_key!r}")
        tournament_id = str(key)

        if snapshot_fn is None:
            snapshot_fn = lambda: self.availability(key)  # noqa: E731

        listener = None
        if self.pubsub is not None:
            try:
                listener = self.pubsub.listen_availability(tournament_id)
            except PubSubUnavailable as e:
                logger.warning(f"Push channel unavailable for {tournament_id}, polling instead: {e}")

        return FeedSubscription(tournament_id, snapshot_fn, listener, self.poll_interval)


class FeedSubscription:
    def __init__(self, tournament_id: str, snapshot_fn, listener=None, poll_interval: float = 5.0):
        self.tournament_id = tournament_id
        self.poll_interval = poll_interval
        self._snapshot_fn = snapshot_fn
        self._listener = listener
        self._snapshot_pending = True
        self._last_version = -1
        self._next_poll = 0.0
        self._closed = False

    @property
    def live(self) -> bool:
        return self._listener is not None

    def get(self, timeout: float = 1.0) -> Optional[Availability]:
        """Next availability newer than anything delivered so far, or None on timeout."""
        if self._closed:
            return None

        if self._snapshot_pending:
            self._snapshot_pending = False
            self._next_poll = time.monotonic() + self.poll_interval
            return self._deliver(self._snapshot_fn())

        if self.live:
            return self._get_pushed(timeout)
        return self._poll(timeout)

    def stream(self, timeout: float = 30.0) -> Iterator[Optional[Availability]]:
        """Yield updates forever; None marks an idle interval (useful for keepalives)."""
        while not self._closed:
            yield self.get(timeout)

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _get_pushed(self, timeout: float) -> Optional[Availability]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                event = self._listener.get(timeout=remaining)
            except PubSubUnavailable as e:
                logger.warning(f"Lost push channel for {self.tournament_id}, polling instead: {e}")
                self._listener.close()
                self._listener = None
                self._next_poll = time.monotonic()
                return self._poll(max(deadline - time.monotonic(), 0))

            if event is None:
                return None
            if event.type != EventType.AVAILABILITY_CHANGED:
                continue

            availability = Availability.from_event(event)
            if availability.version <= self._last_version:
                continue
            return self._deliver(availability)

    def _poll(self, timeout: float) -> Optional[Availability]:
        now = time.monotonic()
        wait = self._next_poll - now
        if wait > timeout:
            time.sleep(timeout)
            return None
        if wait > 0:
            time.sleep(wait)

        self._next_poll = time.monotonic() + self.poll_interval
        availability = self._snapshot_fn()
        if availability is None or availability.version <= self._last_version:
            return None
        return self._deliver(availability)

    def _deliver(self, availability: Optional[Availability]) -> Optional[Availability]:
        if availability is not None and availability.version > self._last_version:
            self._last_version = availability.version
        return availability
