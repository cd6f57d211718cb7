import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from shared.clock import Clock, utcnow
from shared.errors import ConflictError, ValidationError, INVALID_TRANSITION, game_not_found
from shared.state_machine import GameStateMachine, TransitionError
from .models import db, Game, GameResult, PenaltyReason, Registration, RegistrationStatus
from .penalty_engine import PenaltyEngine
from .points_calculator import PointsCalculator
from .standings_aggregator import StandingsAggregator
from .storage import storage_guard

logger = logging.getLogger(__name__)

NO_SHOW_SCOPES = ('all', 'paid', 'unpaid')


@dataclass
class RecordOutcome:
    game_id: str
    status: str
    results: List[GameResult] = field(default_factory=list)
    penalized_user_ids: List[int] = field(default_factory=list)
    already_penalized_user_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'game_id': self.game_id,
            'status': self.status,
            'results': [r.to_dict() for r in self.results],
            'no_show_penalties': self.penalized_user_ids,
            'already_penalized': self.already_penalized_user_ids,
        }


def parse_placements(placements) -> List[Tuple[int, int]]:
    """
    Normalise placements to (user_id, place) pairs.

    Accepts pairs or mappings with 'user_id' and 'place' keys.
    """
    if not placements or isinstance(placements, (str, bytes, dict)):
        raise ValidationError("Placements must be a non-empty list")

    parsed = []
    for item in placements:
        try:
            if isinstance(item, dict):
                user_id, place = item['user_id'], item['place']
            else:
                user_id, place = item
        except (KeyError, TypeError, ValueError):
            raise ValidationError(f"Malformed placement entry: {item!r}")

        for name, value in (('user_id', user_id), ('place', place)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"Placement {name} must be an integer, got {value!r}")
        if place < 1:
            raise ValidationError(f"Place must be positive, got {place}")
        parsed.append((user_id, place))

    user_ids = [u for u, _ in parsed]
    if len(set(user_ids)) != len(user_ids):
        raise ValidationError("A player appears more than once in the placements")
    places = [p for _, p in parsed]
    if len(set(places)) != len(places):
        raise ValidationError("Places must be unique within a game")
    return parsed


class ResultsRecorder:
    """
    Stores final placements for a game and rolls them into standings.

    Order within one call: replace results, rebuild standings, then
    penalise no-shows, so penalties are always the last standings write.
    Results stay committed if the penalty pass fails.
    """

    def __init__(
        self,
        locks,
        calculator: PointsCalculator,
        aggregator: StandingsAggregator,
        penalties: PenaltyEngine,
        clock: Clock = utcnow,
        no_show_points: int = 100,
        no_show_scope: str = 'all'
    ):
        if no_show_scope not in NO_SHOW_SCOPES:
            raise ValueError(f"no_show_scope must be one of {NO_SHOW_SCOPES}")
        self.locks = locks
        self.calculator = calculator
        self.aggregator = aggregator
        self.penalties = penalties
        self.clock = clock
        self.no_show_points = no_show_points
        self.no_show_scope = no_show_scope

    def _no_show_candidates(self, game: Game, placed: Iterable[int]) -> List[Registration]:
        placed = set(placed)
        query = Registration.query.filter_by(
            game_id=game.id,
            status=RegistrationStatus.REGISTERED.value
        )
        if self.no_show_scope == 'paid':
            query = query.filter_by(paid=True)
        elif self.no_show_scope == 'unpaid':
            query = query.filter_by(paid=False)
        registrations = query.order_by(Registration.id).all()
        return [r for r in registrations if r.user_id not in placed]

    def record_results(self, game_id: str, placements) -> RecordOutcome:
        parsed = parse_placements(placements)

        game = Game.query.filter_by(game_id=game_id).first()
        if not game:
            raise game_not_found(game_id)
        tournament = game.tournament

        with self.locks.game(game_id), self.locks.tournament(tournament.tournament_id):
            with storage_guard('record results'):
                game = Game.query.filter_by(game_id=game_id).populate_existing().first()
                sm = GameStateMachine.from_state_string(game.status)
                old_status = sm.state.value
                try:
                    new_status = sm.transition('record_results')
                except TransitionError as e:
                    raise ConflictError(str(e), INVALID_TRANSITION) from e

                GameResult.query.filter_by(game_id=game.id).delete(synchronize_session='fetch')
                db.session.flush()

                results = []
                for user_id, place in parsed:
                    result = GameResult(
                        game_id=game.id,
                        user_id=user_id,
                        place=place,
                        points_earned=self.calculator.points_for_place(place),
                        created_at=self.clock()
                    )
                    db.session.add(result)
                    results.append(result)

                game.status = new_status.value
                db.session.flush()
                self.aggregator.rebuild(tournament)
                db.session.commit()

            logger.info(
                f"Recorded {len(results)} results for game {game_id} ({old_status} -> {new_status.value})"
            )

            outcome = RecordOutcome(game_id=game_id, status=new_status.value, results=results)
            with storage_guard('apply no-show penalties'):
                for registration in self._no_show_candidates(game, (u for u, _ in parsed)):
                    if self.penalties.has_penalty(game, registration.user_id, PenaltyReason.NO_SHOW):
                        outcome.already_penalized_user_ids.append(registration.user_id)
                        continue
                    self.penalties.record_penalty(
                        tournament,
                        registration.user_id,
                        PenaltyReason.NO_SHOW,
                        self.no_show_points,
                        game=game
                    )
                    outcome.penalized_user_ids.append(registration.user_id)
                db.session.commit()

        if outcome.penalized_user_ids:
            logger.info(f"No-show penalties for game {game_id}: {outcome.penalized_user_ids}")
        return outcome
