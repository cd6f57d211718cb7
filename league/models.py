from enum import Enum
from flask_sqlalchemy import SQLAlchemy

from shared.clock import utcnow
from shared.state_machine import GameStatus

db = SQLAlchemy()


class RegistrationStatus(str, Enum):
    REGISTERED = "registered"
    CANCELLED = "cancelled"
    CANCELLED_WITH_PENALTY = "cancelled_with_penalty"


class PenaltyReason(str, Enum):
    LATE_CANCELLATION = "late_cancellation"
    NO_SHOW = "no_show"


def _iso(value):
    return value.isoformat() if value else None


class Tournament(db.Model):
    __tablename__ = 'tournaments'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    top_players_count = db.Column(db.Integer, nullable=False, default=20)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    games = db.relationship('Game', back_populates='tournament', cascade='all, delete-orphan',
                            order_by='Game.sequence_number')

    def to_dict(self):
        return {
            'tournament_id': self.tournament_id,
            'name': self.name,
            'top_players_count': self.top_players_count,
            'game_count': len(self.games),
            'created_at': _iso(self.created_at),
        }


class Game(db.Model):
    __tablename__ = 'games'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False)
    sequence_number = db.Column(db.Integer, nullable=False)
    scheduled_time = db.Column(db.DateTime, nullable=False)
    min_players = db.Column(db.Integer, nullable=False, default=2)
    max_players = db.Column(db.Integer, nullable=False)
    buy_in = db.Column(db.Integer, nullable=False, default=0)
    registration_deadline = db.Column(db.DateTime, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=GameStatus.UPCOMING.value, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    tournament = db.relationship('Tournament', back_populates='games')
    registrations = db.relationship('Registration', back_populates='game', cascade='all, delete-orphan')
    results = db.relationship('GameResult', back_populates='game', cascade='all, delete-orphan',
                              order_by='GameResult.place')

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'sequence_number', name='unique_game_sequence'),
    )

    @property
    def active_registrations(self):
        return [r for r in self.registrations if r.status == RegistrationStatus.REGISTERED.value]

    def to_dict(self, include_registrations: bool = False):
        data = {
            'game_id': self.game_id,
            'tournament_id': self.tournament.tournament_id,
            'sequence_number': self.sequence_number,
            'scheduled_time': _iso(self.scheduled_time),
            'registration_deadline': _iso(self.registration_deadline),
            'min_players': self.min_players,
            'max_players': self.max_players,
            'buy_in': self.buy_in,
            'status': self.status,
            'registered_count': len(self.active_registrations),
        }
        if include_registrations:
            data['registrations'] = [r.to_dict() for r in self.active_registrations]
        return data


class Registration(db.Model):
    __tablename__ = 'registrations'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    status = db.Column(db.String(30), nullable=False, default=RegistrationStatus.REGISTERED.value)
    registered_at = db.Column(db.DateTime, default=utcnow)
    paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    game = db.relationship('Game', back_populates='registrations')

    # One active registration per (game, user); cancelled rows are kept as history
    __table_args__ = (
        db.Index(
            'unique_active_registration', 'game_id', 'user_id',
            unique=True,
            sqlite_where=db.text("status = 'registered'"),
            postgresql_where=db.text("status = 'registered'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == RegistrationStatus.REGISTERED.value

    def to_dict(self):
        return {
            'game_id': self.game.game_id,
            'user_id': self.user_id,
            'status': self.status,
            'registered_at': _iso(self.registered_at),
            'paid': self.paid,
            'paid_at': _iso(self.paid_at),
            'cancelled_at': _iso(self.cancelled_at),
        }


class GameResult(db.Model):
    __tablename__ = 'game_results'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    place = db.Column(db.Integer, nullable=False)
    points_earned = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    game = db.relationship('Game', back_populates='results')

    __table_args__ = (
        db.UniqueConstraint('game_id', 'user_id', name='unique_result_per_user'),
        db.UniqueConstraint('game_id', 'place', name='unique_place_per_game'),
    )

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'place': self.place,
            'points_earned': self.points_earned,
        }


class Penalty(db.Model):
    __tablename__ = 'penalties'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id'), nullable=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False, index=True)
    reason = db.Column(db.String(50), nullable=False)
    points = db.Column(db.Integer, nullable=False)
    # what the deduction actually removed; less than points when the floor was hit
    points_applied = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)

    game = db.relationship('Game')
    tournament = db.relationship('Tournament')

    __table_args__ = (
        db.Index('penalty_episode', 'game_id', 'user_id', 'reason'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'game_id': self.game.game_id if self.game else None,
            'tournament_id': self.tournament.tournament_id,
            'reason': self.reason,
            'points': self.points,
            'points_applied': self.points_applied,
            'created_at': _iso(self.created_at),
        }


class TournamentStanding(db.Model):
    __tablename__ = 'tournament_standings'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=False)
    total_points = db.Column(db.Integer, nullable=False, default=0)
    games_played = db.Column(db.Integer, nullable=False, default=0)
    average_place = db.Column(db.Float, nullable=True)
    best_place = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    tournament = db.relationship('Tournament')

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'user_id', name='unique_standing_per_user'),
        db.CheckConstraint('total_points >= 0', name='standing_points_non_negative'),
    )

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'total_points': self.total_points,
            'games_played': self.games_played,
            'average_place': round(self.average_place, 2) if self.average_place is not None else None,
            'best_place': self.best_place,
        }
