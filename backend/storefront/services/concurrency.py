# Overview: Optimistic-locking and database-error helpers shared by checkout and the payment finaliser.

from __future__ import annotations

from sqlalchemy.exc import DataError, IntegrityError

from ..extensions import db


# duplicate key, check violation, not-null violation, invalid text representation
PERMANENT_SQLSTATES = {"23505", "23514", "23502", "22P02"}


def lock_for_update(query):
    """
    Apply row-level locking for read-modify-write sequences.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def compare_and_swap(model, row_id: int, column: str, observed, values: dict) -> bool:
    """
    UPDATE model SET <values> WHERE id = row_id AND <column> = observed.

    Returns True when exactly one row changed. Zero rows means another writer
    moved the column first. The caller owns the commit.
    """
    rowcount = (
        db.session.query(model)
        .filter(model.id == row_id, getattr(model, column) == observed)
        .update(values, synchronize_session=False)
    )
    return rowcount == 1


def sqlstate(exc: BaseException) -> str | None:
    """SQLSTATE of a DBAPI error wrapped by SQLAlchemy, when the driver exposes one."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code:
        return str(code)
    diag = getattr(orig, "diag", None)
    code = getattr(diag, "sqlstate", None) if diag is not None else None
    return str(code) if code else None


def is_permanent_db_error(exc: BaseException) -> bool:
    """
    Permanent errors will fail identically on retry (bad data, constraint hit).
    Everything else (timeouts, dropped connections, lock waits) is transient.
    """
    code = sqlstate(exc)
    if code is not None:
        return code in PERMANENT_SQLSTATES
    return isinstance(exc, (IntegrityError, DataError))


def violated_constraint(exc: IntegrityError) -> str:
    """Lower-cased driver message for telling unique violations apart."""
    return str(getattr(exc, "orig", exc)).lower()

