"""ORM session helpers for the CRUD handlers.

`session_scope(engine, commit=True)` yields a `sqlmodel.Session`, commits
when the block finishes cleanly, rolls back when it raises, and always
closes the session.
"""
from contextlib import contextmanager
from typing import Iterator, Optional, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel
import logging

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)


@contextmanager
def session_scope(engine, commit: bool = False) -> Iterator[Session]:
    """Yield a short-lived SQLModel `Session` bound to `engine`.

    With `commit=True` the session is committed on clean exit. Any error
    rolls the session back before propagating.
    """
    sess = Session(engine)
    logger.debug("Opening DB session %s", sess)
    try:
        yield sess
        if commit:
            sess.commit()
    except SQLAlchemyError as e:
        logger.error("DB session error, rolling back: %s", e)
        sess.rollback()
        raise
    except BaseException:
        sess.rollback()
        raise
    finally:
        sess.close()
        logger.debug("Closed DB session %s", sess)


def get_live(session: Session, model: Type[ModelT], record_id: str) -> Optional[ModelT]:
    """Fetch a record by id, treating soft-deleted rows as missing."""
    obj = session.get(model, record_id)
    if obj is None or getattr(obj, 'deleted_at', None) is not None:
        return None
    return obj
