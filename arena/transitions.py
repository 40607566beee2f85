import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from shared.events import status_changed_event
from shared.pubsub import PubSubUnavailable
from shared.state_machine import (
    RegistrationStateMachine, RegistrationStatus, TransitionError
)
from .errors import ErrorCode, TransientStoreError, store_error
from .feed import AvailabilityFeed
from .ledger import RegistrationLedger
from .locks import TournamentLocks
from .models import db, Registration, Tournament

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Caller identity as verified by the identity provider."""
    user_id: str
    is_admin: bool = False


@dataclass
class TransitionResult:
    ok: bool
    registration_id: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    error: Optional[ErrorCode] = None
    message: str = ""

    @classmethod
    def failed(cls, registration_id: str, error: ErrorCode, message: str) -> "TransitionResult":
        return cls(ok=False, registration_id=registration_id, error=error, message=message)

    def to_dict(self):
        if self.ok:
            return {
                'ok': True,
                'registration_id': self.registration_id,
                'old_status': self.old_status,
                'new_status': self.new_status,
            }
        return {
            'ok': False,
            'registration_id': self.registration_id,
            'error': self.error.value,
            'message': self.message,
        }


@dataclass
class BatchTransitionResult:
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, ErrorCode] = field(default_factory=dict)
    results: List[TransitionResult] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self):
        return {
            'ok': self.ok,
            'succeeded': self.succeeded,
            'failed': {rid: code.value for rid, code in self.failed.items()},
            'failed_count': self.failed_count,
        }


class StatusTransitionService:
    """
    Admin review of registrations.

    Every successful call updates one registration and appends exactly
    one audit entry in the same transaction, then pushes the new slot
    count. Changes run under the tournament lock shared with submissions.
    Moving a rejected registration back to approved claims a slot again
    and is refused when the tournament is full.
    """

    def __init__(
        self,
        feed: AvailabilityFeed,
        locks: TournamentLocks = None,
        ledger: RegistrationLedger = None
    ):
        self.feed = feed
        self.locks = locks or TournamentLocks()
        self.ledger = ledger or RegistrationLedger()

    def transition(
        self,
        registration_id: str,
        actor: Actor,
        new_status,
        reason: str = None
    ) -> TransitionResult:
        """
        Approve or reject one registration.

        Business failures come back as a TransitionResult; store failures
        raise TransientStoreError after a rollback.
        """
        problem = self._check_request(registration_id, actor, new_status, reason)
        if problem is not None:
            return problem

        new_status = RegistrationStatus(new_status)
        reason = reason.strip() if new_status == RegistrationStatus.REJECTED else None

        try:
            db.session.rollback()
            registration = Registration.query.filter_by(registration_id=registration_id).first()
            if registration is None:
                db.session.rollback()
                return TransitionResult.failed(
                    registration_id, ErrorCode.NOT_FOUND, f"Registration {registration_id} not found"
                )
            tournament_pk = registration.tournament_id
            tournament_id = registration.tournament.tournament_id
            db.session.rollback()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise store_error("transition", e) from e

        # Same lock as submissions: slot counts and versions only change under it
        with self.locks.hold(tournament_id):
            result = self._apply(registration_id, tournament_pk, actor, new_status, reason)

        if result.ok:
            logger.info(
                f"Registration {registration_id} {result.old_status} -> {result.new_status} "
                f"by {actor.user_id}"
            )
            self.feed.refresh(tournament_id)
            self._announce(tournament_id, result, actor)
        else:
            logger.info(f"Transition of {registration_id} refused: {result.error.value}")

        return result

    def transition_many(
        self,
        registration_ids: Iterable[str],
        actor: Actor,
        new_status,
        reason: str = None
    ) -> BatchTransitionResult:
        """
        Apply the same decision to many registrations, each in its own
        transaction. Failures are collected, never rolled back together.
        """
        batch = BatchTransitionResult()
        ids = list(dict.fromkeys(registration_ids))

        if actor is None or not actor.is_admin:
            for rid in ids:
                result = TransitionResult.failed(rid, ErrorCode.UNAUTHORIZED, "Admin role required")
                batch.failed[rid] = result.error
                batch.results.append(result)
            return batch

        for rid in ids:
            try:
                result = self.transition(rid, actor, new_status, reason)
            except TransientStoreError as e:
                result = TransitionResult.failed(rid, e.code, e.reason)

            batch.results.append(result)
            if result.ok:
                batch.succeeded.append(rid)
            else:
                batch.failed[rid] = result.error

        if batch.failed:
            logger.warning(f"{batch.failed_count} of {len(ids)} registrations failed to update")
        return batch

    def _check_request(self, registration_id, actor, new_status, reason) -> Optional[TransitionResult]:
        if actor is None or not actor.is_admin:
            return TransitionResult.failed(registration_id, ErrorCode.UNAUTHORIZED, "Admin role required")

        if not actor.user_id:
            return TransitionResult.failed(
                registration_id, ErrorCode.VALIDATION_ERROR, "Actor identity is required"
            )

        if RegistrationStateMachine.action_for(new_status) is None:
            return TransitionResult.failed(
                registration_id, ErrorCode.VALIDATION_ERROR,
                f"Status must be 'approved' or 'rejected', got {new_status!r}"
            )

        if RegistrationStatus(new_status) == RegistrationStatus.REJECTED:
            if not isinstance(reason, str) or not reason.strip():
                return TransitionResult.failed(
                    registration_id, ErrorCode.VALIDATION_ERROR, "A reason is required for rejections"
                )

        if not registration_id:
            return TransitionResult.failed(
                registration_id, ErrorCode.VALIDATION_ERROR, "Registration id is required"
            )
        return None

    def _apply(self, registration_id, tournament_pk, actor, new_status, reason) -> TransitionResult:
        try:
            db.session.rollback()

            # Tournament row first, same order as submit()
            tournament = Tournament.query.filter_by(
                id=tournament_pk
            ).with_for_update().populate_existing().first()

            registration = Registration.query.filter_by(
                registration_id=registration_id
            ).with_for_update().populate_existing().first()
            if registration is None:
                db.session.rollback()
                return TransitionResult.failed(
                    registration_id, ErrorCode.NOT_FOUND, f"Registration {registration_id} not found"
                )

            old_status = registration.status
            sm = RegistrationStateMachine.from_state_string(old_status)
            action = RegistrationStateMachine.action_for(new_status)
            guard_context = {
                'capacity': tournament.capacity,
                'filled': self.ledger.count_holding(tournament.id),
            }

            try:
                sm.transition(action, guard_context)
            except TransitionError as e:
                db.session.rollback()
                if sm.claims_slot(action):
                    return TransitionResult.failed(
                        registration_id, ErrorCode.TOURNAMENT_FULL,
                        "Tournament is full, cannot re-approve this registration"
                    )
                return TransitionResult.failed(registration_id, ErrorCode.VALIDATION_ERROR, str(e))

            registration.status = sm.state.value
            registration.rejection_reason = reason if sm.state == RegistrationStatus.REJECTED else None
            self.ledger.append_audit(registration, actor.user_id, old_status, sm.state.value, reason)
            self.ledger.bump_version(tournament.id)

            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Transition of {registration_id} rolled back: {e}")
            raise store_error("transition", e) from e

        return TransitionResult(
            ok=True,
            registration_id=registration_id,
            old_status=old_status,
            new_status=new_status.value
        )

    def _announce(self, tournament_id: str, result: TransitionResult, actor: Actor):
        pubsub = self.feed.pubsub
        if pubsub is None:
            return
        try:
            pubsub.publish_admin_event(status_changed_event(
                tournament_id, result.registration_id, result.old_status, result.new_status, actor.user_id
            ))
        except PubSubUnavailable as e:
            logger.warning(f"Admin notification for {result.registration_id} skipped: {e}")
