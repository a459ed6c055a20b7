"""Errors raised by the reminder persistence layer."""
from contextlib import contextmanager

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session


class RepositoryError(RuntimeError):
    """The database could not be reached or a query failed. Aborts the scan cycle."""
    pass


class TaskCreationError(RuntimeError):
    """A follow-up task row was rejected (constraint, bad data). Scoped to one entity."""
    pass


@contextmanager
def repository_errors(db: Session, action: str):
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        raise RepositoryError(f"{action} failed: {e}") from e


@contextmanager
def task_write_errors(db: Session, action: str):
    """Lost connections still abort the cycle; rejected rows only fail this write."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        db.rollback()
        raise RepositoryError(f"{action} failed: {e}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise TaskCreationError(f"{action} failed: {e}") from e
