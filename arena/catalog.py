import logging
from typing import List, Optional

from .models import db, GameType, MatchMode, TEAM_SIZE, Tournament, TournamentKey

logger = logging.getLogger(__name__)


# Launch line-up: one tournament per game and mode
DEFAULT_CATALOG = [
    {'game': GameType.BGMI, 'mode': MatchMode.SOLO, 'entry_fee': 20,
     'prize_winner': 350, 'prize_runner': 250, 'prize_per_kill': 9, 'capacity': 100},
    {'game': GameType.BGMI, 'mode': MatchMode.DUO, 'entry_fee': 40,
     'prize_winner': 350, 'prize_runner': 250, 'prize_per_kill': 9, 'capacity': 50},
    {'game': GameType.BGMI, 'mode': MatchMode.SQUAD, 'entry_fee': 80,
     'prize_winner': 350, 'prize_runner': 250, 'prize_per_kill': 9, 'capacity': 25},
    {'game': GameType.FREEFIRE, 'mode': MatchMode.SOLO, 'entry_fee': 20,
     'prize_winner': 350, 'prize_runner': 150, 'prize_per_kill': 5, 'capacity': 48},
    {'game': GameType.FREEFIRE, 'mode': MatchMode.DUO, 'entry_fee': 40,
     'prize_winner': 350, 'prize_runner': 150, 'prize_per_kill': 5, 'capacity': 24},
    {'game': GameType.FREEFIRE, 'mode': MatchMode.SQUAD, 'entry_fee': 80,
     'prize_winner': 350, 'prize_runner': 150, 'prize_per_kill': 5, 'capacity': 12},
]


class TournamentCatalog:
    """Read access to the fixed set of tournaments the engine allocates against."""

    def get(self, tournament_key) -> Optional[Tournament]:
        """Get tournament by key ('bgmi-solo', a (game, mode) pair or a TournamentKey)."""
        key = TournamentKey.parse(tournament_key)
        if key is None:
            return None
        return Tournament.query.filter_by(game=key.game.value, mode=key.mode.value).first()

    def get_by_id(self, pk: int) -> Optional[Tournament]:
        return db.session.get(Tournament, pk)

    def list_tournaments(self, active_only: bool = False, game: str = None) -> List[Tournament]:
        query = Tournament.query

        if active_only:
            query = query.filter_by(is_active=True)
        if game:
            query = query.filter_by(game=game)

        return query.order_by(Tournament.game, Tournament.id).all()

    @staticmethod
    def team_size(mode) -> int:
        return TEAM_SIZE[MatchMode(mode)]

    def seed_catalog(self, entries: List[dict] = None) -> int:
        """Insert any missing tournaments. Existing rows are left untouched."""
        created = 0
        for entry in entries or DEFAULT_CATALOG:
            game = GameType(entry['game']).value
            mode = MatchMode(entry['mode']).value
            if Tournament.query.filter_by(game=game, mode=mode).first():
                continue

            db.session.add(Tournament(
                game=game,
                mode=mode,
                entry_fee=entry['entry_fee'],
                prize_winner=entry['prize_winner'],
                prize_runner=entry['prize_runner'],
                prize_per_kill=entry['prize_per_kill'],
                capacity=entry['capacity'],
                is_active=entry.get('is_active', True),
            ))
            created += 1

        db.session.commit()
        if created:
            logger.info(f"Seeded {created} tournament(s) into the catalog")
        return created
