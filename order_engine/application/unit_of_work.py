"""Atomic unit of work for placement and order mutations.

All stock debits, counter increments and row writes of one operation share
the session's transaction. Leaving the block normally commits; any
exception rolls everything back and is re-raised as an ``OrderEngineError``.
"""
import re
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from order_engine.core.logging_config import get_logger
from .errors import OrderEngineError, IntegrityConflict, Contention, InternalError

logger = get_logger(__name__)

# lock_not_available, deadlock_detected, serialization_failure
_RETRYABLE_PGCODES = {"55P03", "40P01", "40001"}

_DUPLICATE_PATTERNS = [
    re.compile(r"Duplicate entry '(?P<value>.+?)' for key '(?P<key>.+?)'"),
    re.compile(r'duplicate key value violates unique constraint "(?P<key>[^"]+)"'),
    re.compile(r"UNIQUE constraint failed: (?P<key>[\w\.]+)"),
]


def clean_integrity_message(error: IntegrityError) -> str:
    raw = str(error.orig) if error.orig is not None else str(error)
    for pattern in _DUPLICATE_PATTERNS:
        match = pattern.search(raw)
        if match:
            value = match.groupdict().get("value")
            if value:
                return f"Duplicate entry '{value}' for key '{match.group('key')}'."
            return f"Duplicate value for '{match.group('key')}'."
    return "The change conflicts with existing data."


def is_retryable(error: OperationalError) -> bool:
    pgcode = getattr(error.orig, "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True
    message = str(error.orig).lower()
    return "database is locked" in message or "lock wait timeout" in message or "deadlock" in message


def translate(error: BaseException) -> OrderEngineError:
    if isinstance(error, OrderEngineError):
        return error
    if isinstance(error, IntegrityError):
        return IntegrityConflict(clean_integrity_message(error))
    if isinstance(error, OperationalError) and is_retryable(error):
        return Contention()
    logger.error(f"Unexpected failure inside unit of work: {error}", exc_info=error)
    return InternalError()


class UnitOfWork:
    def __init__(self, db: Session, lock_timeout_ms: Optional[int] = None):
        self.db = db
        self.lock_timeout_ms = lock_timeout_ms

    def __enter__(self) -> "UnitOfWork":
        if self.lock_timeout_ms and self.db.get_bind().dialect.name == "postgresql":
            # SET LOCAL takes no bind parameters; the value is an int from settings
            self.db.execute(text(f"SET LOCAL lock_timeout = {int(self.lock_timeout_ms)}"))
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            try:
                self.db.commit()
            except SQLAlchemyError as commit_error:
                self.db.rollback()
                raise translate(commit_error) from commit_error
            return False

        self.db.rollback()
        if isinstance(exc, OrderEngineError):
            logger.warning(f"Unit of work rolled back: {exc.code}: {exc.message}")
            return False
        if not isinstance(exc, Exception):
            return False
        raise translate(exc) from exc
