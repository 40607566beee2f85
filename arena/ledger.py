import uuid
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.orm import joinedload, selectinload

from shared.state_machine import RegistrationStatus, SLOT_HOLDING_STATES
from .models import db, AuditEntry, Participant, Registration, Tournament, TournamentKey
from .validation import LeaderInfo, ParticipantInfo

logger = logging.getLogger(__name__)

HOLDING_VALUES = [s.value for s in SLOT_HOLDING_STATES]


def new_registration_id() -> str:
    return f"reg_{uuid.uuid4().hex[:16]}"


class RegistrationLedger:
    """
    Registration rows, their rosters and the admin audit trail.

    Write helpers only stage rows on the current session; the caller owns
    the transaction. Read helpers back the admin panel.
    """

    # ==================== Writes (inside caller's transaction) ====================

    def count_holding(self, tournament_pk: int) -> int:
        """Registrations currently holding a slot (pending + approved)."""
        return db.session.query(func.count(Registration.id)).filter(
            Registration.tournament_id == tournament_pk,
            Registration.status.in_(HOLDING_VALUES)
        ).scalar()

    def record_registration(
        self,
        tournament: Tournament,
        leader: LeaderInfo,
        payment_ref: str,
        participants: Sequence[ParticipantInfo],
        team_name: Optional[str] = None,
        payment_screenshot_ref: Optional[str] = None
    ) -> Registration:
        registration = Registration(
            registration_id=new_registration_id(),
            tournament=tournament,
            status=RegistrationStatus.PENDING.value,
            team_name=team_name or None,
            leader_name=leader.name,
            leader_game_id=leader.game_id,
            leader_contact=leader.contact,
            payment_ref=payment_ref,
            payment_screenshot_ref=payment_screenshot_ref or None,
        )
        registration.participants.append(
            Participant(player_name=leader.name, player_game_id=leader.game_id, slot_position=0)
        )
        for position, p in enumerate(participants, start=1):
            registration.participants.append(
                Participant(player_name=p.name, player_game_id=p.game_id, slot_position=position)
            )

        db.session.add(registration)
        return registration

    def append_audit(
        self,
        registration: Registration,
        admin_user_id: str,
        previous_status: str,
        action: str,
        reason: Optional[str] = None
    ) -> AuditEntry:
        entry = AuditEntry(
            registration=registration,
            admin_user_id=admin_user_id,
            previous_status=previous_status,
            action=action,
            reason=reason,
        )
        db.session.add(entry)
        return entry

    def bump_version(self, tournament_pk: int):
        Tournament.query.filter_by(id=tournament_pk).update(
            {Tournament.availability_version: Tournament.availability_version + 1},
            synchronize_session=False
        )

    def current_version(self, tournament_pk: int) -> int:
        return db.session.query(Tournament.availability_version).filter(
            Tournament.id == tournament_pk
        ).scalar() or 0

    # ==================== Reads (admin panel) ====================

    def get_registration(self, registration_id: str) -> Optional[Registration]:
        return Registration.query.options(
            selectinload(Registration.participants),
            joinedload(Registration.tournament)
        ).filter_by(registration_id=registration_id).first()

    def list_registrations(
        self,
        tournament_key=None,
        status: str = None,
        search: str = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Registration]:
        """List registrations newest first, with rosters and tournaments loaded."""
        query = Registration.query.options(
            selectinload(Registration.participants),
            joinedload(Registration.tournament)
        )

        if tournament_key is not None:
            key = TournamentKey.parse(tournament_key)
            if key is None:
                return []
            query = query.join(Tournament).filter(
                Tournament.game == key.game.value,
                Tournament.mode == key.mode.value
            )

        if status:
            query = query.filter(Registration.status == status)

        if search:
            pattern = f"%{search.strip().lower()}%"
            query = query.filter(or_(
                func.lower(Registration.team_name).like(pattern),
                func.lower(Registration.leader_name).like(pattern),
                func.lower(Registration.leader_game_id).like(pattern),
                func.lower(Registration.payment_ref).like(pattern),
            ))

        query = query.order_by(Registration.created_at.desc(), Registration.id.desc())
        return query.offset(offset).limit(limit).all()

    def list_audit_entries(self, registration_id: str = None, limit: int = 100) -> List[AuditEntry]:
        query = AuditEntry.query.options(joinedload(AuditEntry.registration))

        if registration_id:
            query = query.join(Registration).filter(Registration.registration_id == registration_id)

        return query.order_by(AuditEntry.id.desc()).limit(limit).all()

    def tournament_stats(self, tournament_key) -> Optional[dict]:
        key = TournamentKey.parse(tournament_key)
        if key is None:
            return None
        tournament = Tournament.query.filter_by(game=key.game.value, mode=key.mode.value).first()
        if not tournament:
            return None

        rows = db.session.query(Registration.status, func.count(Registration.id)).filter(
            Registration.tournament_id == tournament.id
        ).group_by(Registration.status).all()
        counts = {status: count for status, count in rows}

        pending = counts.get(RegistrationStatus.PENDING.value, 0)
        approved = counts.get(RegistrationStatus.APPROVED.value, 0)
        rejected = counts.get(RegistrationStatus.REJECTED.value, 0)

        return {
            'tournament_id': tournament.tournament_id,
            'total_registrations': pending + approved + rejected,
            'pending_count': pending,
            'approved_count': approved,
            'rejected_count': rejected,
            'capacity': tournament.capacity,
            'remaining_slots': tournament.capacity - (pending + approved),
        }

    def list_stale_pending(self, older_than: timedelta, now: datetime = None) -> List[Registration]:
        """Pending registrations still holding a slot after `older_than`."""
        cutoff = (now or datetime.utcnow()) - older_than
        return Registration.query.options(joinedload(Registration.tournament)).filter(
            Registration.status == RegistrationStatus.PENDING.value,
            Registration.created_at < cutoff
        ).order_by(Registration.created_at).all()
