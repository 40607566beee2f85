"""
Pytest configuration and fixtures for registration service tests.
"""
import os
import sys
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from arena.app import create_app
from arena.models import db, Tournament, TournamentKey
from arena.transitions import Actor
from arena.validation import LeaderInfo, ParticipantInfo


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing."""
    with app.app_context():
        # Clear all tables before each test
        db.session.remove()

        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


def add_tournament(game: str, mode: str, capacity: int, is_active: bool = True) -> Tournament:
    tournament = Tournament(
        game=game,
        mode=mode,
        entry_fee=20,
        prize_winner=350,
        prize_runner=250,
        prize_per_kill=9,
        capacity=capacity,
        is_active=is_active
    )
    db.session.add(tournament)
    return tournament


@pytest.fixture
def sample_tournaments(app, db_session):
    """Small-capacity tournaments for testing. Keyed by tournament id."""
    tournaments = [
        add_tournament('bgmi', 'solo', capacity=2),
        add_tournament('bgmi', 'duo', capacity=3),
        add_tournament('bgmi', 'squad', capacity=2),
        add_tournament('freefire', 'solo', capacity=5, is_active=False),
    ]
    db.session.commit()

    return {t.tournament_id: t for t in tournaments}


@pytest.fixture
def entry():
    """
    Build valid submit() keyword arguments for a tournament.
    `tag` must be alphanumeric; it makes game ids and payment refs unique.
    """
    def _entry(tournament_key, tag='a'):
        key = TournamentKey.parse(tournament_key)
        leader = LeaderInfo(name='Leader Player', game_id=f'{tag}_0', contact='9876543210')
        participants = [
            ParticipantInfo(name='Team Mate', game_id=f'{tag}_{i}')
            for i in range(1, key.team_size)
        ]
        return {
            'tournament_key': key,
            'leader': leader,
            'payment_ref': f'TXN{tag}0001',
            'participants': participants,
            'team_name': None if key.team_size == 1 else f'Team {tag}',
        }
    return _entry


@pytest.fixture
def admin():
    return Actor(user_id='admin-1', is_admin=True)


@pytest.fixture
def player():
    return Actor(user_id='user-1', is_admin=False)


@pytest.fixture
def admin_headers():
    return {'X-Actor-Id': 'admin-1', 'X-Actor-Admin': 'true'}


@pytest.fixture
def player_headers():
    return {'X-Actor-Id': 'user-1', 'X-Actor-Admin': 'false'}
