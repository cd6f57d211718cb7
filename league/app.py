import os
from flask import Flask, request, jsonify

from shared.clock import Clock, utcnow
from shared.errors import (
    LeagueError, NotFoundError, ConflictError, ValidationError, StorageError
)
from shared.locks import create_lock_manager
from .config import config
from .models import db
from .game_registry import GameRegistry, GameUpdate
from .lifecycle_sweeper import LifecycleSweeper
from .penalty_engine import PenaltyEngine
from .points_calculator import PointsCalculator
from .registration_ledger import RegistrationLedger
from .results_recorder import ResultsRecorder
from .standings_aggregator import StandingsAggregator


ERROR_STATUS = {
    NotFoundError: 404,
    ConflictError: 409,
    ValidationError: 400,
    StorageError: 503,
}


def create_app(config_name: str = None, overrides: dict = None, clock: Clock = None) -> Flask:
    """Application factory for the league service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)

    # Initialize services
    clock = clock or utcnow
    cfg = app.config
    locks = create_lock_manager(cfg)
    penalties = PenaltyEngine(locks, clock=clock)
    standings = StandingsAggregator(locks)

    app.clock = clock
    app.locks = locks
    app.penalties = penalties
    app.standings = standings
    app.registry = GameRegistry(
        locks,
        clock=clock,
        registration_window_hours=cfg['DEFAULT_REGISTRATION_WINDOW_HOURS'],
        default_top_players_count=cfg['DEFAULT_TOP_PLAYERS_COUNT']
    )
    app.ledger = RegistrationLedger(
        locks,
        penalties,
        clock=clock,
        penalty_window_hours=cfg['CANCELLATION_PENALTY_WINDOW_HOURS'],
        late_cancellation_points=cfg['LATE_CANCELLATION_PENALTY_POINTS']
    )
    app.results = ResultsRecorder(
        locks,
        PointsCalculator.from_config(cfg),
        standings,
        penalties,
        clock=clock,
        no_show_points=cfg['NO_SHOW_PENALTY_POINTS'],
        no_show_scope=cfg['NO_SHOW_PENALTY_SCOPE']
    )
    # Started and stopped by the process owner (run.py), never on import
    app.sweeper = LifecycleSweeper(app, clock=clock, interval_seconds=cfg['SWEEPER_INTERVAL_SECONDS'])

    # Create tables
    with app.app_context():
        db.create_all()

    register_error_handlers(app)
    register_api_routes(app)

    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(LeagueError)
    def handle_league_error(error: LeagueError):
        status = 500
        for error_type, code in ERROR_STATUS.items():
            if isinstance(error, error_type):
                status = code
                break
        return jsonify(error.to_dict()), status


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _required_int(data: dict, name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} is required and must be an integer")
    return value


def register_api_routes(app: Flask):
    """Register API routes."""

    # ==================== Tournaments ====================

    @app.route('/api/v1/tournaments', methods=['GET'])
    def api_list_tournaments():
        limit = request.args.get('limit', 50, type=int)
        offset = request.args.get('offset', 0, type=int)
        tournaments = app.registry.list_tournaments(limit=limit, offset=offset)
        return jsonify({
            'tournaments': [t.to_dict() for t in tournaments],
            'count': len(tournaments),
            'limit': limit,
            'offset': offset
        })

    @app.route('/api/v1/tournaments', methods=['POST'])
    def api_create_tournament():
        data = _json_body()
        tournament = app.registry.create_tournament(
            name=data.get('name'),
            top_players_count=data.get('top_players_count')
        )
        return jsonify(tournament.to_dict()), 201

    @app.route('/api/v1/tournaments/<tournament_id>', methods=['GET'])
    def api_get_tournament(tournament_id: str):
        return jsonify(app.registry.get_tournament(tournament_id).to_dict())

    @app.route('/api/v1/tournaments/<tournament_id>/standings', methods=['GET'])
    def api_standings(tournament_id: str):
        standings = app.standings.get_standings(tournament_id)
        return jsonify({
            'tournament_id': tournament_id,
            'standings': standings,
            'count': len(standings)
        })

    @app.route('/api/v1/tournaments/<tournament_id>/standings/<int:user_id>', methods=['GET'])
    def api_user_standing(tournament_id: str, user_id: int):
        return jsonify(app.standings.get_standing(tournament_id, user_id))

    @app.route('/api/v1/tournaments/<tournament_id>/standings/rebuild', methods=['POST'])
    def api_rebuild_standings(tournament_id: str):
        players = app.standings.rebuild_standings(tournament_id)
        return jsonify({'message': 'Standings rebuilt', 'players': players})

    @app.route('/api/v1/tournaments/<tournament_id>/penalties', methods=['GET'])
    def api_penalties(tournament_id: str):
        user_id = request.args.get('user_id', type=int)
        penalties = app.penalties.list_penalties(tournament_id, user_id=user_id)
        return jsonify({
            'penalties': [p.to_dict() for p in penalties],
            'count': len(penalties)
        })

    # ==================== Games ====================

    @app.route('/api/v1/tournaments/<tournament_id>/games', methods=['POST'])
    def api_create_game(tournament_id: str):
        data = _json_body()
        if 'scheduled_time' not in data or 'max_players' not in data:
            raise ValidationError("scheduled_time and max_players are required")

        game = app.registry.create_game(
            tournament_id,
            scheduled_time=data['scheduled_time'],
            max_players=data['max_players'],
            min_players=data.get('min_players', 2),
            buy_in=data.get('buy_in', 0),
            registration_deadline=data.get('registration_deadline'),
            sequence_number=data.get('sequence_number')
        )
        return jsonify(game.to_dict()), 201

    @app.route('/api/v1/games', methods=['GET'])
    def api_list_games():
        games = app.registry.list_games(
            tournament_id=request.args.get('tournament_id'),
            status=request.args.get('status')
        )
        return jsonify({
            'games': [g.to_dict(include_registrations=True) for g in games],
            'count': len(games)
        })

    @app.route('/api/v1/games/<game_id>', methods=['GET'])
    def api_get_game(game_id: str):
        game = app.registry.get_game(game_id)
        data = game.to_dict(include_registrations=True)
        data['results'] = [r.to_dict() for r in game.results]
        return jsonify(data)

    @app.route('/api/v1/games/<game_id>', methods=['PATCH'])
    def api_update_game(game_id: str):
        update = GameUpdate.from_dict(_json_body())
        game = app.registry.update_game(game_id, update)
        return jsonify(game.to_dict())

    # ==================== Registration ====================

    @app.route('/api/v1/games/<game_id>/registrations', methods=['GET'])
    def api_list_registrations(game_id: str):
        include_cancelled = request.args.get('include_cancelled', 'false').lower() == 'true'
        registrations = app.ledger.list_registrations(game_id, include_cancelled=include_cancelled)
        return jsonify({
            'registrations': [r.to_dict() for r in registrations],
            'count': len(registrations)
        })

    @app.route('/api/v1/games/<game_id>/registrations', methods=['POST'])
    def api_register(game_id: str):
        user_id = _required_int(_json_body(), 'user_id')
        registration = app.ledger.register(game_id, user_id)
        return jsonify({
            'message': 'Registered',
            'registration': registration.to_dict()
        }), 201

    @app.route('/api/v1/games/<game_id>/registrations/<int:user_id>', methods=['DELETE'])
    def api_cancel(game_id: str, user_id: int):
        outcome = app.ledger.cancel(game_id, user_id)
        return jsonify(outcome.to_dict())

    @app.route('/api/v1/games/<game_id>/registrations/<int:user_id>/payment', methods=['PUT'])
    def api_mark_paid(game_id: str, user_id: int):
        paid = _json_body().get('paid', True)
        if not isinstance(paid, bool):
            raise ValidationError("paid must be a boolean")
        registration = app.ledger.mark_paid(game_id, user_id, paid)
        return jsonify(registration.to_dict())

    # ==================== Results ====================

    @app.route('/api/v1/games/<game_id>/results', methods=['POST'])
    def api_record_results(game_id: str):
        outcome = app.results.record_results(game_id, _json_body().get('placements'))
        return jsonify(outcome.to_dict())

    # ==================== Admin ====================

    @app.route('/api/v1/admin/stats', methods=['GET'])
    def api_admin_stats():
        return jsonify(app.registry.get_stats())

    # ==================== Health Check ====================

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except Exception:
            db_ok = False

        return jsonify({
            'status': 'healthy' if db_ok else 'unhealthy',
            'database': 'connected' if db_ok else 'disconnected',
            'sweeper': 'running' if app.sweeper.running else 'stopped'
        }), 200 if db_ok else 503
