"""Engine setup and a thin raw-SQL facade over SQLAlchemy.

Handlers use `Database.query` / `Database.execute` for raw statements and
`Database.get_connection()` for explicit transactions, without touching
SQLAlchemy call conventions. Engine errors are logged and re-raised as-is.
"""
import os
from typing import Any, Mapping, Optional

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine, Result
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, create_engine
import logging

from . import models  # noqa: F401  registers tables on SQLModel.metadata

logger = logging.getLogger(__name__)


def init_db(database_url: str = "sqlite:///./data/church.db") -> Engine:
    """Create and return SQLAlchemy engine. Creates all tables on startup."""
    is_sqlite = database_url.startswith("sqlite")
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        file_path = database_url[len("sqlite:///"):]
        dirpath = os.path.dirname(file_path)
        try:
            if dirpath and not os.path.exists(dirpath):
                os.makedirs(dirpath, exist_ok=True)
        except OSError:
            logger.warning("Unable to create database directory %s", dirpath)

    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(database_url, echo=False, connect_args=connect_args)

    if is_sqlite:
        try:
            with engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
        except Exception as e:
            logger.debug("Unable to set SQLite pragmas: %s", e)

    SQLModel.metadata.create_all(engine)
    return engine


class QueryResult(BaseModel):
    rows: list[dict]
    row_count: int


class ExecuteResult(BaseModel):
    row_count: int
    last_row_id: Optional[int] = None


def _to_query_result(result: Result) -> QueryResult:
    if result.returns_rows:
        rows = [dict(r) for r in result.mappings().all()]
        return QueryResult(rows=rows, row_count=len(rows))
    return QueryResult(rows=[], row_count=max(result.rowcount or 0, 0))


def _to_execute_result(result: Result) -> ExecuteResult:
    last_row_id = getattr(result, 'lastrowid', None)
    return ExecuteResult(
        row_count=max(result.rowcount or 0, 0),
        last_row_id=last_row_id if isinstance(last_row_id, int) else None,
    )


def _run(conn: Connection, sql: str, params: Optional[Mapping[str, Any]]) -> Result:
    return conn.execute(text(sql), dict(params or {}))


class Transaction:
    """Scoped transactional handle; caller must commit or roll back.

    As a context manager it rolls back on exit when neither ran.
    """

    def __init__(self, engine: Engine):
        self._conn = engine.connect()
        self._tx = self._conn.begin()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        try:
            return _to_query_result(_run(self._conn, sql, params))
        except SQLAlchemyError as exc:
            logger.error("Transaction query error: %s", exc)
            raise

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> ExecuteResult:
        try:
            return _to_execute_result(_run(self._conn, sql, params))
        except SQLAlchemyError as exc:
            logger.error("Transaction execute error: %s", exc)
            raise

    def commit(self):
        try:
            self._tx.commit()
        except SQLAlchemyError as exc:
            logger.error("Transaction commit error: %s", exc)
            raise
        finally:
            self._finish()

    def rollback(self):
        try:
            self._tx.rollback()
        finally:
            self._finish()

    def _finish(self):
        self._finished = True
        self._conn.close()

    def close(self):
        if not self._finished:
            logger.warning("Transaction closed without commit or rollback; rolling back")
            self.rollback()

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self._finished:
            if exc_type is None:
                logger.warning("Transaction left open at end of block; rolling back")
            self.rollback()
        return False


class Database:
    """Uniform query/transaction surface in front of the engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        try:
            with self.engine.begin() as conn:
                return _to_query_result(_run(conn, sql, params))
        except SQLAlchemyError as exc:
            logger.error("Database query error: %s", exc)
            raise

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> ExecuteResult:
        try:
            with self.engine.begin() as conn:
                return _to_execute_result(_run(conn, sql, params))
        except SQLAlchemyError as exc:
            logger.error("Database execute error: %s", exc)
            raise

    def get_connection(self) -> Transaction:
        return Transaction(self.engine)
