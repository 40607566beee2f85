from enum import Enum
from dataclasses import dataclass
from datetime import datetime
import json


class EventType(str, Enum):
    # Slot counters
    AVAILABILITY_CHANGED = "availability.changed"

    # Registration lifecycle
    REGISTRATION_SUBMITTED = "registration.submitted"
    REGISTRATION_STATUS_CHANGED = "registration.status_changed"


@dataclass
class Event:
    type: EventType
    tournament_id: str
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "tournament_id": self.tournament_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            tournament_id=data["tournament_id"],
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def availability_event(tournament_id: str, capacity: int, filled: int, remaining: int, version: int) -> Event:
    return Event(
        type=EventType.AVAILABILITY_CHANGED,
        tournament_id=tournament_id,
        data={
            "capacity": capacity,
            "filled": filled,
            "remaining": remaining,
            "version": version
        }
    )


def registration_submitted_event(tournament_id: str, registration_id: str, slots_remaining: int) -> Event:
    return Event(
        type=EventType.REGISTRATION_SUBMITTED,
        tournament_id=tournament_id,
        data={
            "registration_id": registration_id,
            "slots_remaining": slots_remaining
        }
    )


def status_changed_event(
    tournament_id: str,
    registration_id: str,
    old_status: str,
    new_status: str,
    admin_user_id: str
) -> Event:
    return Event(
        type=EventType.REGISTRATION_STATUS_CHANGED,
        tournament_id=tournament_id,
        data={
            "registration_id": registration_id,
            "old_status": old_status,
            "new_status": new_status,
            "admin_user_id": admin_user_id
        }
    )
