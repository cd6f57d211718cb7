import logging
import threading
from datetime import datetime
from typing import List, Optional

from flask import Flask
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from shared.clock import Clock, utcnow
from shared.state_machine import GameStateMachine, GameStatus, TransitionError
from .models import db, Game

logger = logging.getLogger(__name__)


class LifecycleSweeper:
    """
    Background task moving games from upcoming to in_progress once their
    registration deadline has passed.

    The transition is a conditional UPDATE on the prior status, so running
    several sweepers, or re-running one, is a no-op for games already moved.
    """

    def __init__(self, app: Flask, clock: Clock = utcnow, interval_seconds: float = 60):
        self.app = app
        self.clock = clock
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep_once(self, now: datetime = None) -> List[str]:
        """Run one pass inside the current app context. Returns moved game ids."""
        now = now or self.clock()
        due = Game.query.filter(
            Game.status == GameStatus.UPCOMING.value,
            Game.registration_deadline < now
        ).order_by(Game.registration_deadline).all()

        moved = []
        for game in due:
            game_id = game.game_id
            try:
                if self._advance(game, now):
                    moved.append(game_id)
            except (SQLAlchemyError, TransitionError) as e:
                db.session.rollback()
                logger.error(f"Failed to advance game {game_id}: {e}")

        if moved:
            logger.info(f"Sweeper moved {len(moved)} game(s) to in_progress: {moved}")
        return moved

    def _advance(self, game: Game, now: datetime) -> bool:
        sm = GameStateMachine.from_state_string(game.status)
        target = sm.transition('close_registration', {
            'now': now,
            'deadline': game.registration_deadline
        })

        result = db.session.execute(
            update(Game)
            .where(Game.id == game.id, Game.status == GameStatus.UPCOMING.value)
            .values(status=target.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def _run(self):
        logger.info(f"Lifecycle sweeper started (every {self.interval_seconds}s)")
        while not self._stop_event.is_set():
            try:
                with self.app.app_context():
                    self.sweep_once()
            except Exception as e:
                # keep the thread alive; the next tick retries
                logger.error(f"Sweeper tick failed: {e}", exc_info=True)
            self._stop_event.wait(self.interval_seconds)
        logger.info("Lifecycle sweeper stopped")

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='lifecycle-sweeper', daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def join(self, timeout: float = None):
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
