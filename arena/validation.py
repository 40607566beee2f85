"""
Input checks for registration submissions.

Structural rules (roster size, distinct game ids, team name presence) always
apply. Field format rules mirror the public registration forms and can be
switched off with ENFORCE_FIELD_FORMATS.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .models import MatchMode, TournamentKey

NAME_RE = re.compile(r"^[A-Za-z\s.'-]{2,50}$")
GAME_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{3,20}$")
CONTACT_RE = re.compile(r"^[6-9]\d{9}$")
PAYMENT_REF_RE = re.compile(r"^[A-Za-z0-9]{5,50}$")
TEAM_NAME_RE = re.compile(r"^[A-Za-z0-9\s._-]{3,30}$")

MAX_FIELD_LENGTH = 100


def clean_field(value) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass(frozen=True)
class LeaderInfo:
    name: str
    game_id: str
    contact: str

    @classmethod
    def from_dict(cls, data: dict) -> "LeaderInfo":
        data = data or {}
        return cls(
            name=clean_field(data.get('name')),
            game_id=clean_field(data.get('game_id')),
            contact=clean_field(data.get('contact')),
        )

    def normalized(self) -> "LeaderInfo":
        return LeaderInfo(clean_field(self.name), clean_field(self.game_id), clean_field(self.contact))


@dataclass(frozen=True)
class ParticipantInfo:
    name: str
    game_id: str

    @classmethod
    def from_dict(cls, data: dict) -> "ParticipantInfo":
        data = data or {}
        return cls(name=clean_field(data.get('name')), game_id=clean_field(data.get('game_id')))

    def normalized(self) -> "ParticipantInfo":
        return ParticipantInfo(clean_field(self.name), clean_field(self.game_id))


def validate_submission(
    key: TournamentKey,
    leader: LeaderInfo,
    payment_ref: str,
    participants: Sequence[ParticipantInfo],
    team_name: Optional[str] = None,
    enforce_formats: bool = True
) -> List[str]:
    """Return every problem found; an empty list means the submission is well formed."""
    errors = []

    if not leader.name:
        errors.append("Leader name is required")
    if not leader.game_id:
        errors.append("Leader game ID is required")
    if not leader.contact:
        errors.append("Leader contact is required")
    if not payment_ref:
        errors.append("Payment reference is required")

    expected = key.team_size - 1
    if len(participants) != expected:
        errors.append(
            f"{key.mode.value} registrations need exactly {expected} additional "
            f"participant(s), got {len(participants)}"
        )

    for position, p in enumerate(participants, start=1):
        if not p.name:
            errors.append(f"Player {position + 1} name is required")
        if not p.game_id:
            errors.append(f"Player {position + 1} game ID is required")

    game_ids = [leader.game_id] + [p.game_id for p in participants]
    seen = set()
    for game_id in filter(None, game_ids):
        folded = game_id.lower()
        if folded in seen:
            errors.append(f"Game IDs must be different for each player ({game_id} is repeated)")
            break
        seen.add(folded)

    if key.mode == MatchMode.SOLO:
        if team_name:
            errors.append("Team name is not used for solo registrations")
    elif not team_name:
        errors.append(f"Team name is required for {key.mode.value} registrations")

    values = [leader.name, leader.game_id, leader.contact, payment_ref, team_name or ""]
    values += [v for p in participants for v in (p.name, p.game_id)]
    if any(len(v) > MAX_FIELD_LENGTH for v in values):
        errors.append(f"Fields must be at most {MAX_FIELD_LENGTH} characters")

    if enforce_formats and not errors:
        errors.extend(_format_errors(leader, payment_ref, participants, team_name))

    return errors


def _format_errors(leader, payment_ref, participants, team_name) -> List[str]:
    errors = []
    names = [leader.name] + [p.name for p in participants]
    game_ids = [leader.game_id] + [p.game_id for p in participants]

    for position, name in enumerate(names, start=1):
        if not NAME_RE.match(name):
            errors.append(
                f"Player {position} name must be 2-50 letters, spaces, dots, apostrophes or hyphens"
            )
    for position, game_id in enumerate(game_ids, start=1):
        if not GAME_ID_RE.match(game_id):
            errors.append(
                f"Player {position} game ID must be 3-20 letters, numbers, dots, hyphens or underscores"
            )
    if not CONTACT_RE.match(leader.contact):
        errors.append("Leader contact must be a 10-digit mobile number starting with 6, 7, 8 or 9")
    if not PAYMENT_REF_RE.match(payment_ref):
        errors.append("Payment reference must be 5-50 letters and numbers")
    if team_name and not TEAM_NAME_RE.match(team_name):
        errors.append("Team name must be 3-30 letters, numbers, spaces, dots, underscores or hyphens")

    return errors
