"""
apex_backend/entities.py
------------------------
Find-or-create for reference entities (users, tracks, cars, combos).

Each natural key maps to exactly one row, even when two ingests see a new name
at the same moment:

  1) SELECT by natural key; a hit returns its id.
  2) INSERT ... ON CONFLICT DO NOTHING RETURNING id; a returned row is ours.
  3) No row back (someone else inserted first) or an IntegrityError:
     run the SELECT once more and return that id.

Anything else coming out of sqlite is re-raised as DatabaseError.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from .errors import DatabaseError
from .session_parser import CanonicalSession

log = logging.getLogger("apex.entities")

# kind -> (table, natural-key column)
_KINDS: Dict[str, Tuple[str, str]] = {
    "user":  ("users",  "username"),
    "track": ("tracks", "name"),
    "car":   ("cars",   "name"),
}


@dataclass(frozen=True)
class SessionRefs:
    user_id: int
    track_id: int
    car_id: int
    combo_id: int


def _lookup(conn: sqlite3.Connection, sql: str, params: Sequence) -> Optional[int]:
    rows = conn.execute(sql, params).fetchall()
    return int(rows[0][0]) if rows else None


def _find_or_create(
    conn: sqlite3.Connection,
    select_sql: str,
    insert_sql: str,
    params: Sequence,
    label: str,
) -> int:
    try:
        found = _lookup(conn, select_sql, params)
        if found is not None:
            return found

        try:
            rows = conn.execute(insert_sql, params).fetchall()
            row = rows[0] if rows else None
        except sqlite3.IntegrityError as ie:
            log.debug("insert conflict for %s (%s); re-reading", label, ie)
            row = None

        if row is not None:
            log.debug("created %s id=%s", label, row[0])
            return int(row[0])

        # Lost the race to a concurrent writer: the row exists now.
        found = _lookup(conn, select_sql, params)
    except sqlite3.Error as ex:
        raise DatabaseError(f"resolve {label} failed: {type(ex).__name__}: {ex}") from ex

    if found is None:
        raise DatabaseError(f"resolve {label} failed: row vanished after insert conflict")
    return found


def resolve(conn: sqlite3.Connection, kind: str, natural_key: str) -> int:
    """Return the id for a user/track/car name, creating the row if needed."""
    try:
        table, col = _KINDS[kind]
    except KeyError:
        raise ValueError(f"unknown entity kind: {kind!r}") from None

    return _find_or_create(
        conn,
        f"SELECT id FROM {table} WHERE {col} = ?",
        f"INSERT INTO {table} ({col}) VALUES (?) ON CONFLICT({col}) DO NOTHING RETURNING id",
        (natural_key,),
        f"{kind} {natural_key!r}",
    )


def resolve_combo(conn: sqlite3.Connection, car_id: int, track_id: int) -> int:
    """Return the id for a car/track pairing, creating it if needed."""
    return _find_or_create(
        conn,
        "SELECT id FROM combos WHERE car_id = ? AND track_id = ?",
        "INSERT INTO combos (car_id, track_id) VALUES (?, ?) "
        "ON CONFLICT(car_id, track_id) DO NOTHING RETURNING id",
        (car_id, track_id),
        f"combo car={car_id} track={track_id}",
    )


def resolve_session_refs(conn: sqlite3.Connection, session: CanonicalSession) -> SessionRefs:
    user_id = resolve(conn, "user", session.username)
    track_id = resolve(conn, "track", session.track)
    car_id = resolve(conn, "car", session.car)
    combo_id = resolve_combo(conn, car_id, track_id)
    return SessionRefs(user_id=user_id, track_id=track_id, car_id=car_id, combo_id=combo_id)
