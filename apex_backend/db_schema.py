from __future__ import annotations
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

"""
apex_backend/db_schema.py
-------------------------
Centralized, idempotent SQLite schema management for the lap store.

Design goals
- Reference entities (users, tracks, cars, combos) are create-once and unique
  on their natural keys, so find-or-create can lean on the constraint.
- Laps are unique on (combo_id, session_key, lap_no); re-delivering a session
  updates rows in place instead of adding new ones.
- Keep schema creation safe to call at every boot (idempotent).
- Allow destructive rebuilds (recreate=True) when starting fresh.

IMPORTANT:
SQLite only enforces FOREIGN KEY constraints when 'PRAGMA foreign_keys=ON' is set
on the connection performing writes. connect() below does that; use it.
"""

# Bump when DDL changes in a way worth tracking.
LOCKED_USER_VERSION = 1

# Seconds a writer waits on a locked database before giving up.
BUSY_TIMEOUT_S = 10.0

# ------------------------
# DDL: Reference entities
# ------------------------
REFERENCE_DDL = """
CREATE TABLE IF NOT EXISTS users (
    id        INTEGER PRIMARY KEY,
    username  TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS tracks (
    id    INTEGER PRIMARY KEY,
    name  TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS cars (
    id    INTEGER PRIMARY KEY,
    name  TEXT NOT NULL UNIQUE
);

-- One car/track pairing; laps are grouped against it for leaderboards.
CREATE TABLE IF NOT EXISTS combos (
    id        INTEGER PRIMARY KEY,
    car_id    INTEGER NOT NULL,
    track_id  INTEGER NOT NULL,
    FOREIGN KEY (car_id)   REFERENCES cars(id),
    FOREIGN KEY (track_id) REFERENCES tracks(id),
    UNIQUE(car_id, track_id)
);
CREATE INDEX IF NOT EXISTS idx_combos_track ON combos(track_id);
"""

# ------------------------
# DDL: Laps
# ------------------------
LAPS_DDL = """
CREATE TABLE IF NOT EXISTS laps (
    id           INTEGER PRIMARY KEY,
    user_id      INTEGER NOT NULL,
    combo_id     INTEGER NOT NULL,
    session_key  TEXT NOT NULL,             -- digest of the delivered session (see lap_store.session_key_for)
    lap_no       INTEGER NOT NULL,          -- lap index within that session
    lap_time     REAL NOT NULL,             -- opaque ordered numeric, as delivered by the client
    valid        INTEGER NOT NULL DEFAULT 1,
    sectors      TEXT NOT NULL DEFAULT '[]', -- JSON array, order preserved
    updated_at   INTEGER,                   -- epoch seconds of last write
    FOREIGN KEY (user_id)  REFERENCES users(id),
    FOREIGN KEY (combo_id) REFERENCES combos(id),
    UNIQUE(combo_id, session_key, lap_no)
);
CREATE INDEX IF NOT EXISTS idx_laps_user_combo_time ON laps(user_id, combo_id, lap_time);
CREATE INDEX IF NOT EXISTS idx_laps_time ON laps(lap_time);
"""

# ------------------------
# DDL: Convenience views
# ------------------------
VIEWS_DDL = """
-- Laps joined to human-friendly names.
CREATE VIEW IF NOT EXISTS v_laps_enriched AS
SELECT
  l.id,
  l.lap_no,
  l.lap_time,
  l.valid,
  l.sectors,
  l.updated_at,
  u.username,
  t.name AS track,
  c.name AS car
FROM laps l
JOIN users  u  ON u.id  = l.user_id
JOIN combos co ON co.id = l.combo_id
JOIN tracks t  ON t.id  = co.track_id
JOIN cars   c  ON c.id  = co.car_id;
"""


# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    cur = conn.cursor()
    cur.executescript(script)
    conn.commit()

def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute("DROP VIEW IF EXISTS v_laps_enriched")
    # children before parents
    cur.execute("DROP TABLE IF EXISTS laps")
    cur.execute("DROP TABLE IF EXISTS combos")
    cur.execute("DROP TABLE IF EXISTS cars")
    cur.execute("DROP TABLE IF EXISTS tracks")
    cur.execute("DROP TABLE IF EXISTS users")
    conn.commit()

def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True   : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        # WAL lets readers keep going while an ingest holds the write lock.
        conn.execute("PRAGMA journal_mode=WAL;")
        if recreate:
            _drop_everything(conn)

        _exec_script(conn, REFERENCE_DDL)
        _exec_script(conn, LAPS_DDL)
        _exec_script(conn, VIEWS_DDL)

        cur = conn.cursor()
        cur.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()

@contextmanager
def connect(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """
    Scoped store handle: one connection per ingest/request, always closed.
    Rows come back as sqlite3.Row.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_S)
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        yield conn
    finally:
        conn.close()
