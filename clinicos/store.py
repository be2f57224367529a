"""Row-level access helpers shared by the scheduling services.

Lookups return ``None`` for "nothing there" and raise :class:`StoreFailure`
when the query itself fails, so callers can treat a missing shift as a normal
outcome while still seeing broken storage.
"""

import structlog
from sqlalchemy.exc import IntegrityError, MultipleResultsFound, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StoreFailure

log = structlog.get_logger("clinicos.store")


def _fail(db: Session, entity: str, action: str, exc: Exception) -> StoreFailure:
    db.rollback()
    log.error("store_call_failed", entity=entity, action=action, error=str(exc))
    return StoreFailure(f"{entity} {action} failed")


def fetch_one_or_none(db: Session, stmt, *, entity: str):
    try:
        return db.execute(stmt).scalar_one_or_none()
    except MultipleResultsFound as exc:
        raise _fail(db, entity, "unique lookup", exc) from exc
    except SQLAlchemyError as exc:
        raise _fail(db, entity, "lookup", exc) from exc


def fetch_first(db: Session, stmt, *, entity: str):
    try:
        return db.execute(stmt.limit(1)).scalars().first()
    except SQLAlchemyError as exc:
        raise _fail(db, entity, "lookup", exc) from exc


def fetch_all(db: Session, stmt, *, entity: str) -> list:
    try:
        return list(db.execute(stmt).scalars().all())
    except SQLAlchemyError as exc:
        raise _fail(db, entity, "query", exc) from exc


def execute(db: Session, stmt, *, entity: str):
    try:
        return db.execute(stmt)
    except SQLAlchemyError as exc:
        raise _fail(db, entity, "write", exc) from exc


def flush(db: Session, *, entity: str) -> None:
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise _fail(db, entity, "write", exc) from exc


def commit(db: Session, *, entity: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise _fail(db, entity, "commit", exc) from exc
