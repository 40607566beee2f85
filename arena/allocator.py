import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from shared.events import registration_submitted_event
from shared.pubsub import PubSubUnavailable
from .errors import ErrorCode, store_error
from .feed import Availability, AvailabilityFeed
from .ledger import RegistrationLedger
from .locks import TournamentLocks
from .models import db, Tournament, TournamentKey
from .validation import LeaderInfo, ParticipantInfo, clean_field, validate_submission

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    accepted: bool
    registration_id: Optional[str] = None
    slots_remaining: Optional[int] = None
    error: Optional[ErrorCode] = None
    message: str = ""
    details: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.accepted

    @classmethod
    def rejected(cls, error: ErrorCode, message: str, details: List[str] = None) -> "SubmitResult":
        return cls(accepted=False, error=error, message=message, details=details or [])

    def to_dict(self):
        if self.accepted:
            return {
                'ok': True,
                'registration_id': self.registration_id,
                'slots_remaining': self.slots_remaining,
            }
        return {
            'ok': False,
            'error': self.error.value,
            'message': self.message,
            'details': self.details,
        }


class CapacityAllocator:
    """
    Admits a registration only while the tournament has a free slot.

    The capacity check and the insert share one transaction, run while
    holding the tournament's lock (keyed in-process lock plus the
    tournament row lock), so concurrent submissions for the same
    tournament are serialized and never oversell. Different tournaments
    do not contend.
    """

    def __init__(
        self,
        feed: AvailabilityFeed,
        locks: TournamentLocks = None,
        ledger: RegistrationLedger = None,
        enforce_formats: bool = True
    ):
        self.feed = feed
        self.locks = locks or TournamentLocks()
        self.ledger = ledger or RegistrationLedger()
        self.enforce_formats = enforce_formats

    def submit(
        self,
        tournament_key,
        leader: LeaderInfo,
        payment_ref: str,
        participants: Sequence[ParticipantInfo] = (),
        team_name: str = None,
        payment_screenshot_ref: str = None
    ) -> SubmitResult:
        """
        Try to claim one slot.

        Returns a SubmitResult for every business outcome. Raises
        TransientStoreError only for store failures, after rolling back.
        """
        key = TournamentKey.parse(tournament_key)
        if key is None:
            return SubmitResult.rejected(
                ErrorCode.TOURNAMENT_NOT_FOUND,
                f"Unknown tournament {tournament_key!r}"
            )

        not_text = [
            f"{name} must be text"
            for name, value in (
                ('payment_ref', payment_ref),
                ('team_name', team_name),
                ('payment_screenshot_ref', payment_screenshot_ref),
            )
            if value is not None and not isinstance(value, str)
        ]
        if not_text:
            return SubmitResult.rejected(ErrorCode.VALIDATION_ERROR, not_text[0], not_text)

        leader = leader.normalized()
        participants = [p.normalized() for p in participants]
        payment_ref = clean_field(payment_ref)
        team_name = clean_field(team_name) or None
        payment_screenshot_ref = clean_field(payment_screenshot_ref) or None

        errors = validate_submission(
            key, leader, payment_ref, participants, team_name,
            enforce_formats=self.enforce_formats
        )
        if errors:
            return SubmitResult.rejected(ErrorCode.VALIDATION_ERROR, errors[0], errors)

        tournament_id = str(key)
        with self.locks.hold(tournament_id):
            result, availability = self._allocate(
                key, leader, payment_ref, participants, team_name, payment_screenshot_ref
            )

        if result.accepted:
            logger.info(
                f"Registration {result.registration_id} accepted for {tournament_id}, "
                f"{result.slots_remaining} slot(s) left"
            )
            self.feed.publish(tournament_id, availability)
            self._announce(tournament_id, result)
        else:
            logger.info(f"Registration for {tournament_id} rejected: {result.error.value}")

        return result

    def _allocate(self, key, leader, payment_ref, participants, team_name, payment_screenshot_ref):
        try:
            # Start from a clean transaction so the locked read is the first statement
            db.session.rollback()

            tournament = Tournament.query.filter_by(
                game=key.game.value,
                mode=key.mode.value
            ).with_for_update().populate_existing().first()

            if tournament is None:
                db.session.rollback()
                return SubmitResult.rejected(
                    ErrorCode.TOURNAMENT_NOT_FOUND, f"Tournament {key} not found"
                ), None

            if not tournament.is_active:
                db.session.rollback()
                return SubmitResult.rejected(
                    ErrorCode.TOURNAMENT_INACTIVE, f"Tournament {key} is not accepting registrations"
                ), None

            count_before = self.ledger.count_holding(tournament.id)
            if count_before >= tournament.capacity:
                db.session.rollback()
                return SubmitResult.rejected(ErrorCode.TOURNAMENT_FULL, "Tournament is full"), None

            registration = self.ledger.record_registration(
                tournament, leader, payment_ref, participants,
                team_name=team_name,
                payment_screenshot_ref=payment_screenshot_ref
            )
            self.ledger.bump_version(tournament.id)
            version = self.ledger.current_version(tournament.id)
            capacity = tournament.capacity
            registration_id = registration.registration_id

            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Registration for {key} rolled back: {e}")
            raise store_error("submit", e) from e

        filled = count_before + 1
        return SubmitResult(
            accepted=True,
            registration_id=registration_id,
            slots_remaining=capacity - filled
        ), Availability.from_counts(capacity, filled, version)

    def _announce(self, tournament_id: str, result: SubmitResult):
        pubsub = self.feed.pubsub
        if pubsub is None:
            return
        try:
            pubsub.publish_admin_event(
                registration_submitted_event(tournament_id, result.registration_id, result.slots_remaining)
            )
        except PubSubUnavailable as e:
            logger.warning(f"Admin notification for {result.registration_id} skipped: {e}")
