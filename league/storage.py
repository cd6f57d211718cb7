import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from shared.errors import StorageError
from .models import db

logger = logging.getLogger(__name__)


@contextmanager
def storage_guard(action: str):
    """Roll back and re-raise persistence failures as StorageError."""
    try:
        yield
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Storage failure during {action}: {e}")
        raise StorageError(f"Storage failure during {action}") from e
