"""
Error kinds raised by the league engine.

NotFound, Conflict and Validation errors are business outcomes and are
reported to the caller as-is. StorageError wraps a failed persistence call;
nothing in the engine retries it.
"""


class LeagueError(Exception):
    kind = "error"
    default_code = "error"

    def __init__(self, message: str, code: str = None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            'error': self.message,
            'code': self.code,
            'kind': self.kind,
        }


class NotFoundError(LeagueError):
    kind = "not_found"
    default_code = "not_found"


class ConflictError(LeagueError):
    kind = "conflict"
    default_code = "conflict"


class ValidationError(LeagueError):
    kind = "validation"
    default_code = "invalid"


class StorageError(LeagueError):
    kind = "storage_failure"
    default_code = "storage_failure"


class LockTimeoutError(StorageError):
    default_code = "lock_timeout"


# Codes
GAME_NOT_FOUND = "game_not_found"
TOURNAMENT_NOT_FOUND = "tournament_not_found"
REGISTRATION_NOT_FOUND = "registration_not_found"
STANDING_NOT_FOUND = "standing_not_found"
ALREADY_REGISTERED = "already_registered"
GAME_FULL = "game_full"
REGISTRATION_CLOSED = "registration_closed"
INVALID_TRANSITION = "invalid_transition"
GAME_FINISHED = "game_finished"


def game_not_found(game_id: str) -> NotFoundError:
    return NotFoundError(f"Game {game_id} not found", GAME_NOT_FOUND)


def tournament_not_found(tournament_id: str) -> NotFoundError:
    return NotFoundError(f"Tournament {tournament_id} not found", TOURNAMENT_NOT_FOUND)


def registration_not_found(game_id: str, user_id: int) -> NotFoundError:
    return NotFoundError(
        f"No active registration for user {user_id} in game {game_id}",
        REGISTRATION_NOT_FOUND
    )
