from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional, Union
from flask_sqlalchemy import SQLAlchemy

from shared.state_machine import RegistrationStateMachine, RegistrationStatus

db = SQLAlchemy()


class GameType(str, Enum):
    BGMI = "bgmi"
    FREEFIRE = "freefire"


class MatchMode(str, Enum):
    SOLO = "solo"
    DUO = "duo"
    SQUAD = "squad"


# Players per slot, leader included
TEAM_SIZE = {
    MatchMode.SOLO: 1,
    MatchMode.DUO: 2,
    MatchMode.SQUAD: 4,
}


class TournamentKey(NamedTuple):
    game: GameType
    mode: MatchMode

    def __str__(self) -> str:
        return f"{self.game.value}-{self.mode.value}"

    @property
    def team_size(self) -> int:
        return TEAM_SIZE[self.mode]

    @classmethod
    def parse(cls, value: Union["TournamentKey", str, tuple]) -> Optional["TournamentKey"]:
        """Accept a key, a (game, mode) pair or a 'game-mode' string. None if unknown."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            game, sep, mode = value.strip().lower().partition('-')
            if not sep:
                return None
        elif isinstance(value, tuple) and len(value) == 2:
            game, mode = value
        else:
            return None
        try:
            return cls(GameType(game), MatchMode(mode))
        except ValueError:
            return None


class Tournament(db.Model):
    __tablename__ = 'tournaments'

    id = db.Column(db.Integer, primary_key=True)
    game = db.Column(db.String(20), nullable=False)
    mode = db.Column(db.String(20), nullable=False)

    entry_fee = db.Column(db.Integer, nullable=False)
    prize_winner = db.Column(db.Integer, nullable=False)
    prize_runner = db.Column(db.Integer, nullable=False)
    prize_per_kill = db.Column(db.Integer, nullable=False)

    capacity = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Bumped with every registration insert or status change
    availability_version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    registrations = db.relationship('Registration', back_populates='tournament')

    __table_args__ = (
        db.UniqueConstraint('game', 'mode', name='unique_game_mode'),
        db.CheckConstraint('capacity > 0', name='positive_capacity'),
    )

    @property
    def key(self) -> TournamentKey:
        return TournamentKey(GameType(self.game), MatchMode(self.mode))

    @property
    def tournament_id(self) -> str:
        return str(self.key)

    @property
    def team_size(self) -> int:
        return self.key.team_size

    def to_dict(self):
        return {
            'tournament_id': self.tournament_id,
            'game': self.game,
            'mode': self.mode,
            'team_size': self.team_size,
            'entry_fee': self.entry_fee,
            'prize_winner': self.prize_winner,
            'prize_runner': self.prize_runner,
            'prize_per_kill': self.prize_per_kill,
            'capacity': self.capacity,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Registration(db.Model):
    __tablename__ = 'registrations'

    id = db.Column(db.Integer, primary_key=True)
    registration_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=RegistrationStatus.PENDING.value, index=True)

    team_name = db.Column(db.String(100), nullable=True)  # NULL for solo
    leader_name = db.Column(db.String(100), nullable=False)
    leader_game_id = db.Column(db.String(50), nullable=False)
    leader_contact = db.Column(db.String(30), nullable=False)

    payment_ref = db.Column(db.String(100), nullable=False)
    payment_screenshot_ref = db.Column(db.String(500), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tournament = db.relationship('Tournament', back_populates='registrations')
    participants = db.relationship(
        'Participant',
        back_populates='registration',
        cascade='all, delete-orphan',
        order_by='Participant.slot_position'
    )
    audit_entries = db.relationship('AuditEntry', back_populates='registration', order_by='AuditEntry.id')

    def to_dict(self, include_participants: bool = True):
        review = RegistrationStateMachine.from_state_string(self.status)
        data = {
            'registration_id': self.registration_id,
            'tournament_id': self.tournament.tournament_id if self.tournament else None,
            'status': self.status,
            'team_name': self.team_name,
            'leader_name': self.leader_name,
            'leader_game_id': self.leader_game_id,
            'leader_contact': self.leader_contact,
            'payment_ref': self.payment_ref,
            'payment_screenshot_ref': self.payment_screenshot_ref,
            'rejection_reason': self.rejection_reason,
            'reviewed': review.is_terminal,
            'allowed_actions': review.allowed_actions,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_participants:
            data['participants'] = [p.to_dict() for p in self.participants]
        return data


class Participant(db.Model):
    __tablename__ = 'participants'

    id = db.Column(db.Integer, primary_key=True)
    registration_id = db.Column(db.Integer, db.ForeignKey('registrations.id'), nullable=False, index=True)
    player_name = db.Column(db.String(100), nullable=False)
    player_game_id = db.Column(db.String(50), nullable=False)
    slot_position = db.Column(db.Integer, nullable=False)  # 0 = leader
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    registration = db.relationship('Registration', back_populates='participants')

    __table_args__ = (
        db.UniqueConstraint('registration_id', 'slot_position', name='unique_slot_per_registration'),
    )

    def to_dict(self):
        return {
            'player_name': self.player_name,
            'player_game_id': self.player_game_id,
            'slot_position': self.slot_position,
            'is_leader': self.slot_position == 0,
        }


class AuditEntry(db.Model):
    __tablename__ = 'admin_actions'

    id = db.Column(db.Integer, primary_key=True)
    registration_id = db.Column(db.Integer, db.ForeignKey('registrations.id'), nullable=False, index=True)
    admin_user_id = db.Column(db.String(100), nullable=False)
    previous_status = db.Column(db.String(20), nullable=False)
    action = db.Column(db.String(20), nullable=False)  # resulting status
    reason = db.Column(db.Text, nullable=True)  # required for rejections
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    registration = db.relationship('Registration', back_populates='audit_entries')

    def to_dict(self):
        return {
            'id': self.id,
            'registration_id': self.registration.registration_id if self.registration else None,
            'admin_user_id': self.admin_user_id,
            'previous_status': self.previous_status,
            'action': self.action,
            'reason': self.reason,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
