"""
Unit tests for RegistrationLedger class.
Tests: register, cancel, mark_paid, list_registrations, active_count
"""
from datetime import timedelta

import pytest
from league.models import Penalty, Registration, RegistrationStatus, TournamentStanding
from league.registration_ledger import RegistrationLedger
from shared.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    ALREADY_REGISTERED,
    GAME_FINISHED,
    GAME_FULL,
    GAME_NOT_FOUND,
    REGISTRATION_CLOSED,
    REGISTRATION_NOT_FOUND,
)


class TestRegister:
    """Tests for register method."""

    def test_register_creates_active_registration(self, app, game):
        registration = app.ledger.register(game.game_id, 1)

        assert registration.user_id == 1
        assert registration.status == RegistrationStatus.REGISTERED.value
        assert registration.paid is False
        assert app.ledger.active_count(game.game_id) == 1

    def test_register_unknown_game(self, app, db_session):
        with pytest.raises(NotFoundError) as exc_info:
            app.ledger.register('g_missing', 1)
        assert exc_info.value.code == GAME_NOT_FOUND

    def test_register_twice_conflicts(self, app, game):
        app.ledger.register(game.game_id, 1)
        with pytest.raises(ConflictError) as exc_info:
            app.ledger.register(game.game_id, 1)
        assert exc_info.value.code == ALREADY_REGISTERED

    def test_register_when_full(self, app, make_game):
        game = make_game(max_players=2)
        app.ledger.register(game.game_id, 1)
        app.ledger.register(game.game_id, 2)

        with pytest.raises(ConflictError) as exc_info:
            app.ledger.register(game.game_id, 3)
        assert exc_info.value.code == GAME_FULL
        assert app.ledger.active_count(game.game_id) == 2

    def test_register_at_deadline_is_closed(self, app, make_game, clock):
        game = make_game(hours_from_now=1)
        clock.set(game.registration_deadline)

        with pytest.raises(ConflictError) as exc_info:
            app.ledger.register(game.game_id, 1)
        assert exc_info.value.code == REGISTRATION_CLOSED

    def test_register_just_before_deadline(self, app, make_game, clock):
        game = make_game(hours_from_now=1)
        clock.set(game.registration_deadline - timedelta(seconds=1))

        registration = app.ledger.register(game.game_id, 1)
        assert registration.is_active

    def test_register_after_game_finished(self, app, game):
        app.results.record_results(game.game_id, [(5, 1)])
        with pytest.raises(ConflictError) as exc_info:
            app.ledger.register(game.game_id, 1)
        assert exc_info.value.code == REGISTRATION_CLOSED

    def test_reregister_after_cancel(self, app, game):
        app.ledger.register(game.game_id, 1)
        app.ledger.cancel(game.game_id, 1)
        app.ledger.register(game.game_id, 1)

        all_rows = app.ledger.list_registrations(game.game_id, include_cancelled=True)
        assert [r.status for r in all_rows] == ['cancelled', 'registered']

    def test_cancelled_seats_free_capacity(self, app, make_game):
        game = make_game(max_players=1, min_players=1)
        app.ledger.register(game.game_id, 1)
        with pytest.raises(ConflictError):
            app.ledger.register(game.game_id, 2)
        app.ledger.cancel(game.game_id, 1)

        assert app.ledger.register(game.game_id, 2).is_active


class TestCancel:
    """Tests for cancel method."""

    def test_early_cancel_no_penalty(self, app, game):
        app.ledger.register(game.game_id, 1)
        outcome = app.ledger.cancel(game.game_id, 1)

        assert outcome.penalty_applied is False
        assert outcome.penalty_points == 0
        assert outcome.hours_until_game == pytest.approx(48)
        assert outcome.registration.status == RegistrationStatus.CANCELLED.value
        assert Penalty.query.count() == 0

    def test_late_cancel_applies_penalty(self, app, make_game, tournament):
        game = make_game(hours_from_now=5)
        app.ledger.register(game.game_id, 1)
        outcome = app.ledger.cancel(game.game_id, 1)

        assert outcome.penalty_applied is True
        assert outcome.penalty_points == 100
        assert outcome.registration.status == RegistrationStatus.CANCELLED_WITH_PENALTY.value

        penalties = app.penalties.list_penalties(tournament.tournament_id, user_id=1)
        assert len(penalties) == 1
        assert penalties[0].reason == 'late_cancellation'
        assert penalties[0].game_id == game.id

    def test_exactly_twelve_hours_is_not_penalised(self, app, make_game):
        game = make_game(hours_from_now=12)
        app.ledger.register(game.game_id, 1)
        outcome = app.ledger.cancel(game.game_id, 1)
        assert outcome.penalty_applied is False

    def test_just_under_twelve_hours_is_penalised(self, app, make_game, clock):
        game = make_game(hours_from_now=12)
        app.ledger.register(game.game_id, 1)
        outcome = app.ledger.cancel(game.game_id, 1, now=clock.now + timedelta(seconds=1))
        assert outcome.penalty_applied is True

    def test_late_cancel_clamps_standing_at_zero(self, app, make_game, tournament):
        game = make_game(hours_from_now=2)
        app.ledger.register(game.game_id, 1)
        app.ledger.cancel(game.game_id, 1)

        standing = TournamentStanding.query.filter_by(user_id=1).one()
        assert standing.total_points == 0

    def test_late_cancel_deducts_from_existing_points(self, app, make_game, tournament):
        finished = make_game(hours_from_now=1)
        app.results.record_results(finished.game_id, [(1, 1)])

        game = make_game(hours_from_now=6)
        app.ledger.register(game.game_id, 1)
        app.ledger.cancel(game.game_id, 1)

        assert app.standings.get_standing(tournament.tournament_id, 1)['total_points'] == 200

    def test_cancel_after_game_started_is_penalised(self, app, make_game, clock):
        """Cancelling once the game is under way counts as late."""
        game = make_game(hours_from_now=1)
        app.ledger.register(game.game_id, 1)
        outcome = app.ledger.cancel(game.game_id, 1, now=clock.now + timedelta(hours=2))

        assert outcome.hours_until_game == pytest.approx(-1)
        assert outcome.penalty_applied is True

    def test_cancel_without_registration(self, app, game):
        with pytest.raises(NotFoundError) as exc_info:
            app.ledger.cancel(game.game_id, 42)
        assert exc_info.value.code == REGISTRATION_NOT_FOUND

    def test_cancel_twice(self, app, game):
        app.ledger.register(game.game_id, 1)
        app.ledger.cancel(game.game_id, 1)
        with pytest.raises(NotFoundError):
            app.ledger.cancel(game.game_id, 1)

    def test_cancel_unknown_game(self, app, db_session):
        with pytest.raises(NotFoundError) as exc_info:
            app.ledger.cancel('g_missing', 1)
        assert exc_info.value.code == GAME_NOT_FOUND

    def test_cancel_finished_game(self, app, game):
        app.ledger.register(game.game_id, 1)
        app.results.record_results(game.game_id, [(1, 1)])
        with pytest.raises(ConflictError) as exc_info:
            app.ledger.cancel(game.game_id, 1)
        assert exc_info.value.code == GAME_FINISHED

    def test_cancel_in_progress_game_allowed(self, app, make_game, clock):
        game = make_game(hours_from_now=1)
        app.ledger.register(game.game_id, 1)
        clock.advance(hours=4)
        app.sweeper.sweep_once()

        outcome = app.ledger.cancel(game.game_id, 1)
        assert outcome.registration.status == RegistrationStatus.CANCELLED_WITH_PENALTY.value

    def test_failed_penalty_leaves_registration_active(self, app, make_game):
        game = make_game(hours_from_now=5)
        app.ledger.register(game.game_id, 1)
        ledger = RegistrationLedger(app.locks, app.penalties, clock=app.clock, late_cancellation_points=0)

        with pytest.raises(ValidationError):
            ledger.cancel(game.game_id, 1)

        row = Registration.query.filter_by(user_id=1).populate_existing().one()
        assert row.status == RegistrationStatus.REGISTERED.value
        assert row.cancelled_at is None
        assert Penalty.query.count() == 0
        assert app.ledger.cancel(game.game_id, 1).penalty_applied is True

    def test_cancelled_rows_are_kept(self, app, game):
        app.ledger.register(game.game_id, 1)
        app.ledger.cancel(game.game_id, 1)
        row = Registration.query.filter_by(user_id=1).one()
        assert row.cancelled_at is not None


class TestMarkPaid:
    """Tests for mark_paid method."""

    def test_mark_paid(self, app, game, clock):
        app.ledger.register(game.game_id, 1)
        registration = app.ledger.mark_paid(game.game_id, 1, True)

        assert registration.paid is True
        assert registration.paid_at == clock.now

    def test_mark_unpaid_clears_timestamp(self, app, game):
        app.ledger.register(game.game_id, 1)
        app.ledger.mark_paid(game.game_id, 1, True)
        registration = app.ledger.mark_paid(game.game_id, 1, False)

        assert registration.paid is False
        assert registration.paid_at is None

    def test_mark_paid_without_registration(self, app, game):
        with pytest.raises(NotFoundError):
            app.ledger.mark_paid(game.game_id, 1, True)

    def test_mark_paid_after_finish_conflicts(self, app, game):
        app.ledger.register(game.game_id, 1)
        app.results.record_results(game.game_id, [(2, 1)])

        with pytest.raises(ConflictError) as exc_info:
            app.ledger.mark_paid(game.game_id, 1, True)
        assert exc_info.value.code == GAME_FINISHED


class TestListRegistrations:

    def test_active_only_by_default(self, app, game):
        app.ledger.register(game.game_id, 1)
        app.ledger.register(game.game_id, 2)
        app.ledger.cancel(game.game_id, 1)

        active = app.ledger.list_registrations(game.game_id)
        assert [r.user_id for r in active] == [2]
        assert len(app.ledger.list_registrations(game.game_id, include_cancelled=True)) == 2
