"""
Pytest configuration and fixtures for league engine tests.
"""
import os
import sys
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from league.app import create_app
from league.models import db
from shared.clock import FrozenClock

START = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing', clock=FrozenClock(START))

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture
def clock(app):
    """The app's clock, reset to START for every test."""
    app.clock.set(START)
    return app.clock


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, clock):
    """Create database session for testing."""
    with app.app_context():
        # Clear all tables before each test
        db.session.remove()

        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture
def tournament(app, db_session):
    """Create a sample tournament (season) for testing."""
    return app.registry.create_tournament(name='Spring Season', top_players_count=3)


@pytest.fixture
def make_game(app, db_session, tournament, clock):
    """Factory scheduling games relative to the test clock."""
    def _make_game(hours_from_now: float = 48, max_players: int = 9, **kwargs):
        tournament_id = kwargs.pop('tournament_id', tournament.tournament_id)
        return app.registry.create_game(
            tournament_id,
            scheduled_time=clock.now + timedelta(hours=hours_from_now),
            max_players=max_players,
            **kwargs
        )
    return _make_game


@pytest.fixture
def game(make_game):
    """A game two days out with nine seats."""
    return make_game()


@pytest.fixture
def points_calculator():
    """Create PointsCalculator instance."""
    from league.points_calculator import PointsCalculator
    return PointsCalculator()
