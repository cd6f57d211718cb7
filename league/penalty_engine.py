import logging
from typing import List, Optional, Union

from shared.clock import Clock, utcnow
from shared.errors import ValidationError, game_not_found, tournament_not_found
from .models import db, Game, Penalty, PenaltyReason, Tournament, TournamentStanding
from .storage import storage_guard

logger = logging.getLogger(__name__)


def _reason_value(reason: Union[PenaltyReason, str]) -> str:
    return reason.value if isinstance(reason, PenaltyReason) else str(reason)


class PenaltyEngine:
    """
    Appends penalty records and deducts their points from the user's
    tournament standing. Standings never drop below zero; a penalty taken
    at zero is recorded with nothing applied and is not carried forward.
    """

    def __init__(self, locks, clock: Clock = utcnow):
        self.locks = locks
        self.clock = clock

    def apply_penalty(
        self,
        user_id: int,
        tournament_id: str,
        reason: Union[PenaltyReason, str],
        points: int,
        game_id: str = None
    ) -> Penalty:
        """Record a penalty and deduct it, serialised with standings rebuilds."""
        tournament = Tournament.query.filter_by(tournament_id=tournament_id).first()
        if not tournament:
            raise tournament_not_found(tournament_id)

        game = None
        if game_id is not None:
            game = Game.query.filter_by(game_id=game_id).first()
            if not game:
                raise game_not_found(game_id)

        with self.locks.tournament(tournament_id):
            with storage_guard('apply penalty'):
                penalty = self.record_penalty(tournament, user_id, reason, points, game=game)
                db.session.commit()
        return penalty

    def record_penalty(
        self,
        tournament: Tournament,
        user_id: int,
        reason: Union[PenaltyReason, str],
        points: int,
        game: Optional[Game] = None
    ) -> Penalty:
        """
        Append the penalty and update the standing in the current session.

        The caller holds the tournament lock and commits.
        """
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError(f"Penalty points must be a positive integer, got {points!r}")

        standing = TournamentStanding.query.filter_by(
            tournament_id=tournament.id,
            user_id=user_id
        ).populate_existing().first()
        if standing is None:
            standing = TournamentStanding(
                tournament_id=tournament.id,
                user_id=user_id,
                total_points=0,
                games_played=0
            )
            db.session.add(standing)

        before = standing.total_points or 0
        standing.total_points = max(0, before - points)

        penalty = Penalty(
            user_id=user_id,
            game_id=game.id if game else None,
            tournament_id=tournament.id,
            reason=_reason_value(reason),
            points=points,
            points_applied=before - standing.total_points,
            created_at=self.clock()
        )
        db.session.add(penalty)
        db.session.flush()

        logger.info(
            f"Penalty {penalty.reason} of {points} for user {user_id} in "
            f"{tournament.tournament_id}: {before} -> {standing.total_points}"
        )
        return penalty

    def has_penalty(self, game: Game, user_id: int, reason: Union[PenaltyReason, str]) -> bool:
        """Whether this (game, user, reason) episode was already penalised."""
        return Penalty.query.filter_by(
            game_id=game.id,
            user_id=user_id,
            reason=_reason_value(reason)
        ).count() > 0

    def list_penalties(self, tournament_id: str, user_id: int = None) -> List[Penalty]:
        tournament = Tournament.query.filter_by(tournament_id=tournament_id).first()
        if not tournament:
            raise tournament_not_found(tournament_id)

        query = Penalty.query.filter_by(tournament_id=tournament.id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        return query.order_by(Penalty.created_at, Penalty.id).all()
