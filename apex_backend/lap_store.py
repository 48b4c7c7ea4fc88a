"""
apex_backend/lap_store.py
-------------------------
Lap persistence (write side) and leaderboard reads.

Lap identity
------------
A lap row is keyed by (combo_id, session_key, lap_no). Neither lap times nor
lap count feed the key, so a re-delivered session that corrects a time or has
grown by a lap lands on its existing rows.

session_key is a digest of, in order of preference:
- the session id / start timestamp carried in the payload, or the source file
  it was read from (session_parser sets CanonicalSession.session_id);
- otherwise the driver's username. A driver's unidentified runs on one combo
  then share rows by lap number, and the latest delivery wins.

On conflict the other columns (user_id, lap_time, valid, sectors) are
overwritten, and updated_at moves only when one of them actually changed.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from .errors import DatabaseError
from .session_parser import CanonicalLap, CanonicalSession

UPSERT_LAP_SQL = """
INSERT INTO laps (user_id, combo_id, session_key, lap_no, lap_time, valid, sectors, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, strftime('%s','now'))
ON CONFLICT(combo_id, session_key, lap_no) DO UPDATE SET
  user_id    = excluded.user_id,
  lap_time   = excluded.lap_time,
  valid      = excluded.valid,
  sectors    = excluded.sectors,
  updated_at = excluded.updated_at
WHERE laps.user_id  IS NOT excluded.user_id
   OR laps.lap_time IS NOT excluded.lap_time
   OR laps.valid    IS NOT excluded.valid
   OR laps.sectors  IS NOT excluded.sectors
"""

BEST_LAPS_SQL = """
SELECT u.username, t.name AS track, c.name AS car, MIN(l.lap_time) AS best_lap_time
FROM laps l
JOIN users  u  ON u.id  = l.user_id
JOIN combos co ON co.id = l.combo_id
JOIN tracks t  ON t.id  = co.track_id
JOIN cars   c  ON c.id  = co.car_id
{where}
GROUP BY u.id, co.id
ORDER BY t.name, c.name, best_lap_time
"""

SUMMARY_SQL = """
SELECT
  COUNT(*)                      AS total_laps,
  COUNT(DISTINCT co.track_id)   AS distinct_tracks,
  COUNT(DISTINCT co.car_id)     AS distinct_cars
FROM laps l
JOIN combos co ON co.id = l.combo_id
"""

FASTEST_SQL = """
SELECT lap_time, username, car, track, sectors
FROM v_laps_enriched
ORDER BY lap_time ASC, id ASC
LIMIT 1
"""


def serialize_sectors(sectors: List[Any]) -> str:
    """Compact JSON array; order is preserved."""
    return json.dumps(list(sectors), separators=(",", ":"))


def session_key_for(session: CanonicalSession) -> str:
    if session.session_id:
        basis = ["session", session.session_id]
    else:
        basis = ["driver", session.username]
    return hashlib.sha1(json.dumps(basis, separators=(",", ":")).encode("utf-8")).hexdigest()


def upsert_lap(
    conn: sqlite3.Connection,
    user_id: int,
    combo_id: int,
    session_key: str,
    lap: CanonicalLap,
) -> None:
    """Insert the lap, or overwrite it in place when its identity already exists."""
    try:
        conn.execute(
            UPSERT_LAP_SQL,
            (
                user_id,
                combo_id,
                session_key,
                lap.lap_no,
                lap.time,
                lap.valid,
                serialize_sectors(lap.sectors),
            ),
        )
    except sqlite3.Error as ex:
        raise DatabaseError(f"lap upsert failed: {type(ex).__name__}: {ex}") from ex


# ------------------------------------------------------------
# Reads (async, used by the API)
# ------------------------------------------------------------

def _num(v):
    """REAL columns come back as floats; give whole numbers back as ints."""
    if isinstance(v, float) and v.is_integer():
        return int(v)
    return v


async def best_laps(db_path: str | Path, valid_only: bool = False) -> List[Dict[str, Any]]:
    """Best (minimum) lap time per (user, track, car)."""
    sql = BEST_LAPS_SQL.format(where="WHERE l.valid = 1" if valid_only else "")
    try:
        async with aiosqlite.connect(str(db_path)) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(sql)
            rows = await cur.fetchall()
            await cur.close()
    except sqlite3.Error as ex:
        raise DatabaseError(f"best laps query failed: {type(ex).__name__}: {ex}") from ex

    return [
        {
            "username": r["username"],
            "track": r["track"],
            "car": r["car"],
            "best_lap_time": _num(r["best_lap_time"]),
        }
        for r in rows
    ]


async def lap_summary(db_path: str | Path) -> Dict[str, Any]:
    """Totals plus the single fastest lap with its car and track."""
    try:
        async with aiosqlite.connect(str(db_path)) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(SUMMARY_SQL)
            totals = await cur.fetchone()
            await cur.close()

            cur = await db.execute(FASTEST_SQL)
            fastest = await cur.fetchone()
            await cur.close()
    except sqlite3.Error as ex:
        raise DatabaseError(f"lap summary query failed: {type(ex).__name__}: {ex}") from ex

    fastest_lap: Optional[Dict[str, Any]] = None
    if fastest is not None:
        fastest_lap = {
            "lap_time": _num(fastest["lap_time"]),
            "username": fastest["username"],
            "car": fastest["car"],
            "track": fastest["track"],
            "sectors": json.loads(fastest["sectors"] or "[]"),
        }

    return {
        "total_laps": int(totals["total_laps"] or 0),
        "distinct_tracks": int(totals["distinct_tracks"] or 0),
        "distinct_cars": int(totals["distinct_cars"] or 0),
        "fastest_lap": fastest_lap,
    }
