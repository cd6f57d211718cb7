import logging
from typing import Dict, List

from sqlalchemy import func

from shared.errors import NotFoundError, STANDING_NOT_FOUND, tournament_not_found
from .models import db, Game, GameResult, Penalty, Tournament, TournamentStanding
from .storage import storage_guard

logger = logging.getLogger(__name__)


class StandingsAggregator:
    """
    Rebuilds a tournament's cumulative standings from stored game results.

    The rebuild derives totals from results and then subtracts what each
    recorded penalty actually removed when it was applied (floored at zero),
    so rebuilding never erases an earlier deduction and never turns a
    penalty taken at zero into a charge against later winnings. Position
    is never stored; it comes from sorting at read time.
    """

    def __init__(self, locks):
        self.locks = locks

    def _get_tournament(self, tournament_id: str) -> Tournament:
        tournament = Tournament.query.filter_by(tournament_id=tournament_id).first()
        if not tournament:
            raise tournament_not_found(tournament_id)
        return tournament

    def rebuild_standings(self, tournament_id: str) -> int:
        """Rebuild under the tournament lock. Returns the number of players with results."""
        tournament = self._get_tournament(tournament_id)
        with self.locks.tournament(tournament_id):
            with storage_guard('rebuild standings'):
                count = self.rebuild(tournament)
                db.session.commit()
        return count

    def rebuild(self, tournament: Tournament) -> int:
        """Recompute every standing row in the current session.

        The caller holds the tournament lock and commits.
        """
        aggregates = db.session.query(
            GameResult.user_id,
            func.sum(GameResult.points_earned),
            func.count(GameResult.id),
            func.avg(GameResult.place),
            func.min(GameResult.place),
        ).join(Game, GameResult.game_id == Game.id).filter(
            Game.tournament_id == tournament.id
        ).group_by(GameResult.user_id).all()

        deductions: Dict[int, int] = dict(
            db.session.query(Penalty.user_id, func.sum(Penalty.points_applied))
            .filter(Penalty.tournament_id == tournament.id)
            .group_by(Penalty.user_id)
            .all()
        )

        existing = {
            s.user_id: s
            for s in TournamentStanding.query.filter_by(tournament_id=tournament.id).all()
        }

        seen = set()
        for user_id, total, played, average_place, best_place in aggregates:
            standing = existing.get(user_id)
            if standing is None:
                standing = TournamentStanding(tournament_id=tournament.id, user_id=user_id)
                db.session.add(standing)
            standing.total_points = max(0, int(total) - int(deductions.get(user_id, 0)))
            standing.games_played = int(played)
            standing.average_place = float(average_place)
            standing.best_place = int(best_place)
            seen.add(user_id)

        # Players whose results were replaced away keep their row, emptied
        for user_id, standing in existing.items():
            if user_id in seen:
                continue
            standing.total_points = 0
            standing.games_played = 0
            standing.average_place = None
            standing.best_place = None

        db.session.flush()
        logger.info(f"Rebuilt standings for {tournament.tournament_id}: {len(seen)} players with results")
        return len(seen)

    def get_standings(self, tournament_id: str) -> List[Dict]:
        """Ranked standings with position and grand final eligibility."""
        tournament = self._get_tournament(tournament_id)
        rows = TournamentStanding.query.filter_by(tournament_id=tournament.id).all()

        # Points desc, fewer games first, user id keeps the order total
        rows.sort(key=lambda s: (-s.total_points, s.games_played, s.user_id))

        standings = []
        for position, row in enumerate(rows, start=1):
            entry = row.to_dict()
            entry['position'] = position
            entry['in_grand_final'] = position <= tournament.top_players_count
            standings.append(entry)
        return standings

    def get_standing(self, tournament_id: str, user_id: int) -> Dict:
        for entry in self.get_standings(tournament_id):
            if entry['user_id'] == user_id:
                return entry
        raise NotFoundError(
            f"No standing for user {user_id} in tournament {tournament_id}",
            STANDING_NOT_FOUND
        )
