"""
Unit tests for CapacityAllocator class.
Tests: admission, capacity bound, rejections, atomicity, feed pushes
"""
import pytest
from sqlalchemy.exc import OperationalError

from arena.allocator import CapacityAllocator, SubmitResult
from arena.errors import ErrorCode, TransientStoreError, ConflictError
from arena.feed import AvailabilityFeed
from arena.models import db, Registration, Participant, Tournament
from arena.transitions import StatusTransitionService
from arena.validation import LeaderInfo, ParticipantInfo
from shared.events import EventType
from shared.pubsub import LocalPubSub, PubSubUnavailable


@pytest.fixture
def pubsub():
    return LocalPubSub(queue_size=10)


@pytest.fixture
def allocator(pubsub):
    return CapacityAllocator(AvailabilityFeed(pubsub, poll_interval=0.01))


def row_counts():
    return Registration.query.count(), Participant.query.count()


class TestSubmitAccepted:
    """Tests for successful submissions."""

    def test_solo_accepted(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            result = allocator.submit(**entry("bgmi-solo"))

            assert result.accepted is True
            assert result.ok is True
            assert result.registration_id.startswith("reg_")
            assert result.slots_remaining == 1

            registration = Registration.query.filter_by(registration_id=result.registration_id).one()
            assert registration.status == "pending"
            assert registration.team_name is None
            assert registration.tournament.tournament_id == "bgmi-solo"

    def test_squad_stores_full_roster(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            result = allocator.submit(**entry("bgmi-squad", "sq"))
            registration = Registration.query.filter_by(registration_id=result.registration_id).one()

            assert [p.slot_position for p in registration.participants] == [0, 1, 2, 3]
            assert registration.participants[0].player_game_id == "sq_0"
            assert registration.participants[0].player_name == "Leader Player"
            assert registration.team_name == "Team sq"

    def test_inputs_are_trimmed(self, app, sample_tournaments, allocator):
        with app.app_context():
            result = allocator.submit(
                "bgmi-duo",
                LeaderInfo(" Arjun Rao ", " Player001 ", " 9876543210 "),
                " TXN12345 ",
                [ParticipantInfo(" Ravi Kumar ", " Player002 ")],
                team_name="  Night Owls  ",
                payment_screenshot_ref="  "
            )

            assert result.accepted is True
            registration = Registration.query.filter_by(registration_id=result.registration_id).one()
            assert registration.leader_game_id == "Player001"
            assert registration.payment_ref == "TXN12345"
            assert registration.team_name == "Night Owls"
            assert registration.payment_screenshot_ref is None

    def test_registration_ids_are_unique(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            first = allocator.submit(**entry("bgmi-duo", "a"))
            second = allocator.submit(**entry("bgmi-duo", "b"))
            assert first.registration_id != second.registration_id

    def test_to_dict(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            data = allocator.submit(**entry("bgmi-solo")).to_dict()
            assert data["ok"] is True
            assert data["slots_remaining"] == 1


class TestCapacityBound:
    """Tests for the capacity invariant."""

    def test_capacity_two_scenario(self, app, sample_tournaments, allocator, entry, admin):
        """Fill, reject one, the freed slot is reusable."""
        with app.app_context():
            a = allocator.submit(**entry("bgmi-solo", "a"))
            b = allocator.submit(**entry("bgmi-solo", "b"))
            c = allocator.submit(**entry("bgmi-solo", "c"))

            assert (a.accepted, a.slots_remaining) == (True, 1)
            assert (b.accepted, b.slots_remaining) == (True, 0)
            assert c.accepted is False
            assert c.error == ErrorCode.TOURNAMENT_FULL

            transitions = StatusTransitionService(allocator.feed, allocator.locks)
            assert transitions.transition(a.registration_id, admin, "rejected", "Invalid payment").ok

            d = allocator.submit(**entry("bgmi-solo", "d"))
            assert (d.accepted, d.slots_remaining) == (True, 0)

    def test_approved_registrations_hold_slots(self, app, sample_tournaments, allocator, entry, admin):
        with app.app_context():
            transitions = StatusTransitionService(allocator.feed, allocator.locks)
            for tag in ("a", "b"):
                result = allocator.submit(**entry("bgmi-solo", tag))
                transitions.transition(result.registration_id, admin, "approved")

            assert allocator.submit(**entry("bgmi-solo", "c")).error == ErrorCode.TOURNAMENT_FULL

    def test_full_rejection_writes_nothing(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            allocator.submit(**entry("bgmi-solo", "a"))
            allocator.submit(**entry("bgmi-solo", "b"))
            before = row_counts()

            allocator.submit(**entry("bgmi-solo", "c"))
            assert row_counts() == before

    def test_tournaments_are_independent(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            allocator.submit(**entry("bgmi-solo", "a"))
            allocator.submit(**entry("bgmi-solo", "b"))

            result = allocator.submit(**entry("bgmi-duo", "c"))
            assert result.accepted is True
            assert result.slots_remaining == 2


class TestSubmitRejected:
    """Tests for typed rejections."""

    def test_unknown_tournament_key(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            kwargs = entry("bgmi-solo")
            kwargs["tournament_key"] = "chess-solo"
            result = allocator.submit(**kwargs)

            assert result.accepted is False
            assert result.error == ErrorCode.TOURNAMENT_NOT_FOUND

    def test_missing_tournament_row(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            result = allocator.submit(**entry("freefire-squad"))
            assert result.error == ErrorCode.TOURNAMENT_NOT_FOUND

    def test_inactive_tournament(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            result = allocator.submit(**entry("freefire-solo"))

            assert result.error == ErrorCode.TOURNAMENT_INACTIVE
            assert row_counts() == (0, 0)

    def test_squad_duplicate_game_id(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            kwargs = entry("bgmi-squad", "x")
            kwargs["participants"][2] = ParticipantInfo("Team Mate", "x_1")
            result = allocator.submit(**kwargs)

            assert result.error == ErrorCode.VALIDATION_ERROR
            assert any("must be different" in d for d in result.details)
            assert row_counts() == (0, 0)

    def test_wrong_roster_size(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            kwargs = entry("bgmi-squad", "x")
            kwargs["participants"] = kwargs["participants"][:2]
            result = allocator.submit(**kwargs)

            assert result.error == ErrorCode.VALIDATION_ERROR
            assert result.message == result.details[0]

    def test_validation_checked_before_capacity(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            allocator.submit(**entry("bgmi-solo", "a"))
            allocator.submit(**entry("bgmi-solo", "b"))

            kwargs = entry("bgmi-solo", "c")
            kwargs["payment_ref"] = ""
            assert allocator.submit(**kwargs).error == ErrorCode.VALIDATION_ERROR

    def test_non_string_fields_are_validation_errors(self, app, sample_tournaments, allocator, entry):
        with app.app_context():
            for field, value in (("payment_ref", 1234567), ("team_name", 42), ("payment_screenshot_ref", ["x"])):
                kwargs = entry("bgmi-duo", "x")
                kwargs[field] = value
                result = allocator.submit(**kwargs)

                assert result.accepted is False, field
                assert result.error == ErrorCode.VALIDATION_ERROR, field
                assert result.message == f"{field} must be text"

            assert row_counts() == (0, 0)

    def test_rejected_to_dict(self):
        result = SubmitResult.rejected(ErrorCode.TOURNAMENT_FULL, "Tournament is full")
        assert result.to_dict() == {
            'ok': False,
            'error': 'tournament_full',
            'message': 'Tournament is full',
            'details': [],
        }


class TestAtomicity:
    """A failed submission leaves no registration or participant rows."""

    def test_failure_after_insert_rolls_back(self, app, sample_tournaments, allocator, entry, mocker):
        record = allocator.ledger.record_registration

        def record_then_fail(*args, **kwargs):
            record(*args, **kwargs)
            db.session.flush()
            raise OperationalError("INSERT INTO participants", {}, Exception("disk I/O error"))

        mocker.patch.object(allocator.ledger, 'record_registration', side_effect=record_then_fail)

        with app.app_context():
            with pytest.raises(TransientStoreError) as exc_info:
                allocator.submit(**entry("bgmi-squad", "x"))

            assert not isinstance(exc_info.value, ConflictError)
            assert exc_info.value.to_dict()["retryable"] is True
            assert row_counts() == (0, 0)
            assert db.session.query(Tournament).filter_by(mode="squad").one().availability_version == 0

    def test_lock_contention_is_conflict(self, app, sample_tournaments, allocator, entry, mocker):
        mocker.patch.object(
            allocator.ledger, 'count_holding',
            side_effect=OperationalError("SELECT", {}, Exception("database is locked"))
        )

        with app.app_context():
            with pytest.raises(ConflictError) as exc_info:
                allocator.submit(**entry("bgmi-solo"))

            assert exc_info.value.code == ErrorCode.CONFLICT
            assert row_counts() == (0, 0)

    def test_lock_released_after_failure(self, app, sample_tournaments, allocator, entry, mocker):
        mocker.patch.object(
            allocator.ledger, 'count_holding',
            side_effect=OperationalError("SELECT", {}, Exception("disk I/O error"))
        )

        with app.app_context():
            with pytest.raises(TransientStoreError):
                allocator.submit(**entry("bgmi-solo"))
            assert allocator.locks.is_held("bgmi-solo") is False


class TestFeedPush:
    """Tests for pushes after commit."""

    def test_accept_publishes_availability(self, app, sample_tournaments, allocator, pubsub, entry):
        listener = pubsub.listen_availability("bgmi-duo")

        with app.app_context():
            allocator.submit(**entry("bgmi-duo"))

        event = listener.get(timeout=1)
        assert event.type == EventType.AVAILABILITY_CHANGED
        assert event.data["capacity"] == 3
        assert event.data["filled"] == 1
        assert event.data["remaining"] == 2
        assert event.data["version"] == 1

    def test_rejection_publishes_nothing(self, app, sample_tournaments, allocator, pubsub, entry):
        listener = pubsub.listen_availability("freefire-solo")

        with app.app_context():
            allocator.submit(**entry("freefire-solo"))

        assert listener.get(timeout=0.05) is None

    def test_admin_channel_notified(self, app, sample_tournaments, allocator, pubsub, entry):
        listener = pubsub.listen("admin:registrations")

        with app.app_context():
            result = allocator.submit(**entry("bgmi-solo"))

        event = listener.get(timeout=1)
        assert event.type == EventType.REGISTRATION_SUBMITTED
        assert event.data["registration_id"] == result.registration_id

    def test_push_failure_does_not_fail_submit(self, app, sample_tournaments, allocator, pubsub, entry, mocker):
        mocker.patch.object(pubsub, 'publish', side_effect=PubSubUnavailable("redis down"))

        with app.app_context():
            result = allocator.submit(**entry("bgmi-solo"))

            assert result.accepted is True
            assert Registration.query.count() == 1
