"""
Unit tests for LifecycleSweeper class.
Tests: sweep_once transitions, idempotence, failure isolation, start/stop
"""
import threading
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from league.lifecycle_sweeper import LifecycleSweeper
from league.models import db, Game
from shared.state_machine import GameStatus


def _status(app, game):
    return app.registry.get_game(game.game_id).status


class TestSweepOnce:

    def test_moves_only_games_past_deadline(self, app, make_game, clock):
        due = make_game(hours_from_now=1)        # deadline at +3h
        later = make_game(hours_from_now=10)     # deadline at +12h

        moved = app.sweeper.sweep_once(now=clock.now + timedelta(hours=4))

        assert moved == [due.game_id]
        assert _status(app, due) == GameStatus.IN_PROGRESS.value
        assert _status(app, later) == GameStatus.UPCOMING.value

    def test_second_run_is_noop(self, app, make_game, clock):
        game = make_game(hours_from_now=1)
        now = clock.now + timedelta(hours=4)

        assert app.sweeper.sweep_once(now=now) == [game.game_id]
        assert app.sweeper.sweep_once(now=now) == []
        assert _status(app, game) == GameStatus.IN_PROGRESS.value

    def test_deadline_equal_to_now_not_moved(self, app, make_game):
        game = make_game(hours_from_now=1)
        assert app.sweeper.sweep_once(now=game.registration_deadline) == []

    def test_finished_games_untouched(self, app, make_game, clock):
        game = make_game(hours_from_now=1)
        app.results.record_results(game.game_id, [(1, 1)])

        assert app.sweeper.sweep_once(now=clock.now + timedelta(days=1)) == []
        assert _status(app, game) == GameStatus.FINISHED.value

    def test_uses_clock_by_default(self, app, make_game, clock):
        game = make_game(hours_from_now=1)
        assert app.sweeper.sweep_once() == []

        clock.advance(hours=3, seconds=1)
        assert app.sweeper.sweep_once() == [game.game_id]

    def test_explicit_deadline(self, app, make_game, clock):
        game = make_game(hours_from_now=10, registration_deadline=clock.now + timedelta(minutes=5))
        assert app.sweeper.sweep_once(now=clock.now + timedelta(minutes=6)) == [game.game_id]

    def test_continues_after_single_failure(self, app, make_game, clock, mocker):
        first = make_game(hours_from_now=1)
        second = make_game(hours_from_now=2)
        real_advance = app.sweeper._advance
        calls = []

        def flaky_advance(game, now):
            calls.append(game.game_id)
            if len(calls) == 1:
                raise OperationalError('UPDATE', {}, Exception('database is locked'))
            return real_advance(game, now)

        mocker.patch.object(app.sweeper, '_advance', side_effect=flaky_advance)
        moved = app.sweeper.sweep_once(now=clock.now + timedelta(hours=6))

        assert calls == [first.game_id, second.game_id]
        assert moved == [second.game_id]
        assert _status(app, first) == GameStatus.UPCOMING.value

    def test_concurrent_transition_counts_once(self, app, make_game, clock):
        """A game moved by another sweeper between select and update is skipped."""
        game = make_game(hours_from_now=1)
        now = clock.now + timedelta(hours=4)
        stale = app.registry.get_game(game.game_id)
        assert stale.status == GameStatus.UPCOMING.value

        # Another worker moves the row without this session noticing
        db.session.execute(
            update(Game)
            .where(Game.id == stale.id)
            .values(status=GameStatus.IN_PROGRESS.value)
            .execution_options(synchronize_session=False)
        )

        assert app.sweeper._advance(stale, now) is False
        assert _status(app, game) == GameStatus.IN_PROGRESS.value


class TestBackgroundLoop:

    def test_start_and_stop(self, app, mocker):
        ticked = threading.Event()
        sweeper = LifecycleSweeper(app, interval_seconds=0.01)
        mocker.patch.object(sweeper, 'sweep_once', side_effect=lambda: ticked.set())

        sweeper.start()
        try:
            assert ticked.wait(2)
            assert sweeper.running
        finally:
            sweeper.stop()

        assert not sweeper.running

    def test_tick_failure_does_not_kill_thread(self, app, mocker):
        calls = []
        second_tick = threading.Event()

        def failing_sweep():
            calls.append(1)
            if len(calls) >= 2:
                second_tick.set()
            raise RuntimeError("boom")

        sweeper = LifecycleSweeper(app, interval_seconds=0.01)
        mocker.patch.object(sweeper, 'sweep_once', side_effect=failing_sweep)

        sweeper.start()
        try:
            assert second_tick.wait(2)
        finally:
            sweeper.stop()

    def test_start_twice_keeps_one_thread(self, app, mocker):
        sweeper = LifecycleSweeper(app, interval_seconds=10)
        mocker.patch.object(sweeper, 'sweep_once')

        sweeper.start()
        try:
            thread = sweeper._thread
            sweeper.start()
            assert sweeper._thread is thread
        finally:
            sweeper.stop()
