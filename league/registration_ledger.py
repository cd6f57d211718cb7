import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from shared.clock import Clock, utcnow
from shared.errors import (
    ConflictError,
    LeagueError,
    ALREADY_REGISTERED,
    GAME_FINISHED,
    GAME_FULL,
    REGISTRATION_CLOSED,
    game_not_found,
    registration_not_found,
)
from shared.state_machine import GameStateMachine
from .models import db, Game, PenaltyReason, Registration, RegistrationStatus
from .penalty_engine import PenaltyEngine
from .storage import storage_guard

logger = logging.getLogger(__name__)


@dataclass
class CancelOutcome:
    registration: Registration
    hours_until_game: float
    penalty_applied: bool
    penalty_points: int = 0

    def to_dict(self) -> dict:
        return {
            'registration': self.registration.to_dict(),
            'hours_until_game': round(self.hours_until_game, 2),
            'penalty_applied': self.penalty_applied,
            'penalty_points': self.penalty_points,
        }


class RegistrationLedger:
    """
    Per-game registration records:
    - Register with capacity and deadline checks
    - Cancel, with a late-cancellation penalty inside the penalty window
    - Track buy-in payment
    """

    def __init__(
        self,
        locks,
        penalties: PenaltyEngine,
        clock: Clock = utcnow,
        penalty_window_hours: float = 12,
        late_cancellation_points: int = 100
    ):
        self.locks = locks
        self.penalties = penalties
        self.clock = clock
        self.penalty_window_hours = penalty_window_hours
        self.late_cancellation_points = late_cancellation_points

    def _get_game(self, game_id: str, fresh: bool = False) -> Game:
        query = Game.query.filter_by(game_id=game_id)
        if fresh:
            # another request or the sweeper may have changed the row
            query = query.populate_existing()
        game = query.first()
        if not game:
            raise game_not_found(game_id)
        return game

    def _active_registration(self, game: Game, user_id: int) -> Optional[Registration]:
        return Registration.query.filter_by(
            game_id=game.id,
            user_id=user_id,
            status=RegistrationStatus.REGISTERED.value
        ).populate_existing().first()

    def _require_action(self, game: Game, action: str):
        if not GameStateMachine.from_state_string(game.status).can_perform(action):
            raise ConflictError(f"Game {game.game_id} is {game.status}", GAME_FINISHED)

    def active_count(self, game_id: str) -> int:
        game = self._get_game(game_id)
        return Registration.query.filter_by(
            game_id=game.id,
            status=RegistrationStatus.REGISTERED.value
        ).count()

    def list_registrations(self, game_id: str, include_cancelled: bool = False) -> List[Registration]:
        game = self._get_game(game_id)
        query = Registration.query.filter_by(game_id=game.id)
        if not include_cancelled:
            query = query.filter_by(status=RegistrationStatus.REGISTERED.value)
        return query.order_by(Registration.registered_at, Registration.id).all()

    def register(self, game_id: str, user_id: int) -> Registration:
        """Register a user, atomically with the capacity check for this game."""
        with self.locks.game(game_id):
            with storage_guard('register'):
                game = self._get_game(game_id, fresh=True)
                now = self.clock()

                sm = GameStateMachine.from_state_string(game.status)
                if not sm.can_perform('register') or now >= game.registration_deadline:
                    raise ConflictError(
                        f"Registration for game {game_id} closed at {game.registration_deadline.isoformat()}",
                        REGISTRATION_CLOSED
                    )

                if self._active_registration(game, user_id):
                    raise ConflictError(
                        f"User {user_id} is already registered for game {game_id}",
                        ALREADY_REGISTERED
                    )

                registered = Registration.query.filter_by(
                    game_id=game.id,
                    status=RegistrationStatus.REGISTERED.value
                ).count()
                if registered >= game.max_players:
                    raise ConflictError(f"Game {game_id} is full ({game.max_players} players)", GAME_FULL)

                registration = Registration(
                    game_id=game.id,
                    user_id=user_id,
                    status=RegistrationStatus.REGISTERED.value,
                    registered_at=now
                )
                db.session.add(registration)
                try:
                    db.session.commit()
                except IntegrityError:
                    # partial unique index caught a duplicate from another process
                    db.session.rollback()
                    raise ConflictError(
                        f"User {user_id} is already registered for game {game_id}",
                        ALREADY_REGISTERED
                    )

        logger.info(f"User {user_id} registered for game {game_id} ({registered + 1}/{game.max_players})")
        return registration

    def cancel(self, game_id: str, user_id: int, now: datetime = None) -> CancelOutcome:
        """Cancel the active registration, penalising late cancellations."""
        game = self._get_game(game_id)
        tournament_id = game.tournament.tournament_id

        with self.locks.game(game_id), self.locks.tournament(tournament_id):
            with storage_guard('cancel registration'):
                try:
                    game = self._get_game(game_id, fresh=True)
                    self._require_action(game, 'cancel')

                    registration = self._active_registration(game, user_id)
                    if not registration:
                        raise registration_not_found(game_id, user_id)

                    now = now or self.clock()
                    hours_until_game = (game.scheduled_time - now).total_seconds() / 3600
                    registration.cancelled_at = now

                    penalty_points = 0
                    if hours_until_game < self.penalty_window_hours:
                        registration.status = RegistrationStatus.CANCELLED_WITH_PENALTY.value
                        penalty_points = self.late_cancellation_points
                        self.penalties.record_penalty(
                            game.tournament,
                            user_id,
                            PenaltyReason.LATE_CANCELLATION,
                            penalty_points,
                            game=game
                        )
                    else:
                        registration.status = RegistrationStatus.CANCELLED.value
                except LeagueError:
                    db.session.rollback()
                    raise

                db.session.commit()

        logger.info(
            f"User {user_id} cancelled game {game_id} {hours_until_game:.1f}h before start"
            + (f", penalty {penalty_points}" if penalty_points else "")
        )
        return CancelOutcome(
            registration=registration,
            hours_until_game=hours_until_game,
            penalty_applied=penalty_points > 0,
            penalty_points=penalty_points
        )

    def mark_paid(self, game_id: str, user_id: int, paid: bool = True) -> Registration:
        game = self._get_game(game_id)
        self._require_action(game, 'mark_paid')
        with storage_guard('mark paid'):
            registration = self._active_registration(game, user_id)
            if not registration:
                raise registration_not_found(game_id, user_id)

            registration.paid = bool(paid)
            registration.paid_at = self.clock() if paid else None
            db.session.commit()

        logger.info(f"User {user_id} marked {'paid' if paid else 'unpaid'} for game {game_id}")
        return registration
