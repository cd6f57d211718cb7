import logging
import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func

from shared.clock import Clock, parse_datetime, utcnow
from shared.errors import ConflictError, ValidationError, GAME_FINISHED, game_not_found, tournament_not_found
from shared.state_machine import GameStateMachine, GameStatus
from .models import db, Game, Registration, RegistrationStatus, Tournament
from .storage import storage_guard

logger = logging.getLogger(__name__)


@dataclass
class GameUpdate:
    """Partial update for a game. Fields left as None are not touched."""

    scheduled_time: Optional[datetime] = None
    registration_deadline: Optional[datetime] = None
    min_players: Optional[int] = None
    max_players: Optional[int] = None
    buy_in: Optional[int] = None

    def supplied(self) -> Dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "GameUpdate":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        values = {}
        for name in ('scheduled_time', 'registration_deadline'):
            if data.get(name) is not None:
                values[name] = _parse_time(data[name], name)
        for name in ('min_players', 'max_players', 'buy_in'):
            if data.get(name) is not None:
                values[name] = _require_int(data[name], name)
        return cls(**values)


def _parse_time(value, name: str) -> datetime:
    try:
        return parse_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO-8601 datetime, got {value!r}")


def _require_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    return value


def _validate_bounds(min_players: int, max_players: int, buy_in: int):
    if min_players < 1:
        raise ValidationError("min_players must be at least 1")
    if max_players < min_players:
        raise ValidationError("max_players must be greater than or equal to min_players")
    if buy_in < 0:
        raise ValidationError("buy_in cannot be negative")


class GameRegistry:
    """
    Tournament (season) and game records the engine works against:
    - Create/get/list tournaments and games
    - Derive registration deadlines and sequence numbers
    - Apply partial game updates
    - Aggregate counts for the admin dashboard
    """

    def __init__(
        self,
        locks,
        clock: Clock = utcnow,
        registration_window_hours: float = 2,
        default_top_players_count: int = 20
    ):
        self.locks = locks
        self.clock = clock
        self.registration_window_hours = registration_window_hours
        self.default_top_players_count = default_top_players_count

    # ==================== Tournaments ====================

    def create_tournament(self, name: str, top_players_count: int = None) -> Tournament:
        """Create a new tournament (season)."""
        if not name:
            raise ValidationError("Tournament name is required")
        if top_players_count is None:
            top_players_count = self.default_top_players_count
        top_players_count = _require_int(top_players_count, 'top_players_count')
        if top_players_count < 1:
            raise ValidationError("top_players_count must be at least 1")

        tournament = Tournament(
            tournament_id=f"t_{uuid.uuid4().hex[:12]}",
            name=name,
            top_players_count=top_players_count,
            created_at=self.clock()
        )
        with storage_guard('create tournament'):
            db.session.add(tournament)
            db.session.commit()

        logger.info(f"Created tournament {tournament.tournament_id} ({name})")
        return tournament

    def get_tournament(self, tournament_id: str) -> Tournament:
        tournament = Tournament.query.filter_by(tournament_id=tournament_id).first()
        if not tournament:
            raise tournament_not_found(tournament_id)
        return tournament

    def list_tournaments(self, limit: int = 50, offset: int = 0) -> List[Tournament]:
        query = Tournament.query.order_by(Tournament.created_at.desc(), Tournament.id.desc())
        return query.offset(offset).limit(limit).all()

    # ==================== Games ====================

    def create_game(
        self,
        tournament_id: str,
        scheduled_time: datetime,
        max_players: int,
        min_players: int = 2,
        buy_in: int = 0,
        registration_deadline: datetime = None,
        sequence_number: int = None
    ) -> Game:
        """Schedule a game; the deadline defaults to start + the registration window."""
        tournament = self.get_tournament(tournament_id)
        scheduled_time = _parse_time(scheduled_time, 'scheduled_time')
        max_players = _require_int(max_players, 'max_players')
        min_players = _require_int(min_players, 'min_players')
        buy_in = _require_int(buy_in, 'buy_in')
        _validate_bounds(min_players, max_players, buy_in)

        if registration_deadline is None:
            registration_deadline = scheduled_time + timedelta(hours=self.registration_window_hours)
        else:
            registration_deadline = _parse_time(registration_deadline, 'registration_deadline')

        with self.locks.tournament(tournament_id):
            with storage_guard('create game'):
                if sequence_number is None:
                    last = db.session.query(func.max(Game.sequence_number)).filter(
                        Game.tournament_id == tournament.id
                    ).scalar()
                    sequence_number = (last or 0) + 1
                else:
                    sequence_number = _require_int(sequence_number, 'sequence_number')

                game = Game(
                    game_id=f"g_{uuid.uuid4().hex[:12]}",
                    tournament_id=tournament.id,
                    sequence_number=sequence_number,
                    scheduled_time=scheduled_time,
                    min_players=min_players,
                    max_players=max_players,
                    buy_in=buy_in,
                    registration_deadline=registration_deadline,
                    status=GameStatus.UPCOMING.value,
                    created_at=self.clock()
                )
                db.session.add(game)
                db.session.commit()

        logger.info(
            f"Scheduled game {game.game_id} (#{sequence_number}) in {tournament_id} "
            f"at {scheduled_time.isoformat()}, deadline {registration_deadline.isoformat()}"
        )
        return game

    def get_game(self, game_id: str) -> Game:
        game = Game.query.filter_by(game_id=game_id).first()
        if not game:
            raise game_not_found(game_id)
        return game

    def list_games(self, tournament_id: str = None, status: str = None) -> List[Game]:
        """List games ordered by scheduled time."""
        query = Game.query
        if tournament_id:
            tournament = self.get_tournament(tournament_id)
            query = query.filter_by(tournament_id=tournament.id)
        if status:
            try:
                query = query.filter_by(status=GameStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown game status {status!r}")
        return query.order_by(Game.scheduled_time, Game.id).all()

    def update_game(self, game_id: str, update: GameUpdate) -> Game:
        """Apply only the fields supplied in `update`."""
        changes = update.supplied()
        game = self.get_game(game_id)

        with self.locks.game(game_id):
            with storage_guard('update game'):
                game = Game.query.filter_by(game_id=game_id).populate_existing().first()
                if not GameStateMachine.from_state_string(game.status).can_perform('edit'):
                    raise ConflictError(f"Game {game_id} is {game.status} and cannot be edited", GAME_FINISHED)

                if 'scheduled_time' in changes and 'registration_deadline' not in changes:
                    changes['registration_deadline'] = (
                        changes['scheduled_time'] + timedelta(hours=self.registration_window_hours)
                    )

                _validate_bounds(
                    changes.get('min_players', game.min_players),
                    changes.get('max_players', game.max_players),
                    changes.get('buy_in', game.buy_in)
                )

                if 'max_players' in changes:
                    registered = Registration.query.filter_by(
                        game_id=game.id,
                        status=RegistrationStatus.REGISTERED.value
                    ).count()
                    if changes['max_players'] < registered:
                        raise ValidationError(
                            f"max_players {changes['max_players']} is below the {registered} registered players"
                        )

                for name, value in changes.items():
                    setattr(game, name, value)
                db.session.commit()

        if changes:
            logger.info(f"Updated game {game_id}: {', '.join(sorted(changes))}")
        return game

    def get_stats(self) -> Dict:
        """Aggregate counts for the admin dashboard."""
        registered = RegistrationStatus.REGISTERED.value
        return {
            'total_tournaments': Tournament.query.count(),
            'total_games': Game.query.count(),
            'upcoming_games': Game.query.filter_by(status=GameStatus.UPCOMING.value).count(),
            'active_games': Game.query.filter_by(status=GameStatus.IN_PROGRESS.value).count(),
            'finished_games': Game.query.filter_by(status=GameStatus.FINISHED.value).count(),
            'total_players': db.session.query(func.count(func.distinct(Registration.user_id))).scalar() or 0,
            'active_registrations': Registration.query.filter_by(status=registered).count(),
        }
