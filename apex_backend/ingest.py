"""
apex_backend/ingest.py
----------------------
Ingestion entry point shared by the HTTP endpoint and the watch folder.

    normalize(raw) -> for each session, in order:
        BEGIN IMMEDIATE
          resolve user / track / car -> combo
          upsert each lap
        COMMIT

Sessions run one after another on the caller's thread. A store failure rolls
back the session it happened in and stops the batch; sessions committed
before it stay committed. The IngestError carries that partial result.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .db_schema import connect
from .entities import resolve_session_refs
from .errors import DatabaseError, IngestError, IngestFileError
from .lap_store import session_key_for, upsert_lap
from .session_parser import CanonicalSession, SkippedSession, normalize, skipped_as_dicts

log = logging.getLogger("apex.ingest")


@dataclass
class IngestResult:
    uploaded_sessions: int = 0
    uploaded_laps: int = 0
    skipped: List[SkippedSession] = field(default_factory=list)
    dropped_laps: int = 0

    @property
    def skipped_sessions(self) -> int:
        return len(self.skipped)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "uploaded_sessions": self.uploaded_sessions,
            "uploaded_laps": self.uploaded_laps,
            "skipped_sessions": self.skipped_sessions,
            "skipped": skipped_as_dicts(self.skipped),
            "dropped_laps": self.dropped_laps,
        }


def _store_session(conn: sqlite3.Connection, session: CanonicalSession) -> int:
    """One transaction per session. Returns the number of laps written."""
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as ex:
        raise DatabaseError(f"could not open transaction: {type(ex).__name__}: {ex}") from ex

    try:
        refs = resolve_session_refs(conn, session)
        key = session_key_for(session)
        for lap in session.laps:
            upsert_lap(conn, refs.user_id, refs.combo_id, key, lap)
        conn.commit()
    except BaseException:
        # the original failure is the one to report
        try:
            conn.rollback()
        except sqlite3.Error as rb:
            log.error("rollback failed for %s on %s: %s", session.username, session.track, rb)
        raise
    return len(session.laps)


def ingest(db_path: str | Path, raw: Any, source: Optional[str] = None) -> IngestResult:
    """
    Normalize `raw` and persist every valid session.

    `source` is the name of the file the payload was read from, if any.
    Raises IngestError (a DatabaseError) on the first store failure.
    """
    norm = normalize(raw, source=source)
    result = IngestResult(skipped=norm.skipped, dropped_laps=norm.dropped_laps)

    if not norm.sessions:
        log.info("No valid sessions in payload (skipped=%d)", result.skipped_sessions)
        return result

    try:
        with connect(db_path) as conn:
            for session in norm.sessions:
                laps = _store_session(conn, session)
                result.uploaded_sessions += 1
                result.uploaded_laps += laps
                log.info(
                    "Uploaded %d lap(s) for %s on %s by %s",
                    laps, session.car, session.track, session.username,
                )
    except DatabaseError as ex:
        log.error(
            "DB error after %d session(s): %s", result.uploaded_sessions, ex,
        )
        raise IngestError(str(ex), result) from ex
    except sqlite3.Error as ex:
        # connect() itself can fail (bad path, locked file...)
        log.error("DB error opening %s: %s", db_path, ex)
        raise IngestError(f"{type(ex).__name__}: {ex}", result) from ex

    return result


def ingest_file(db_path: str | Path, path: str | Path) -> IngestResult:
    """
    Read one JSON file and ingest it the way the HTTP endpoint does. The file
    name identifies sessions that carry no id of their own.
    """
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as ex:
        raise IngestFileError(f"cannot read {p}: {type(ex).__name__}: {ex}") from ex
    except json.JSONDecodeError as ex:
        raise IngestFileError(f"{p} is not valid JSON: {ex}") from ex
    return ingest(db_path, raw, source=p.name)
