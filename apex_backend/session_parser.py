"""
apex_backend/session_parser.py
------------------------------
Turns raw session payloads from sim clients into canonical sessions.

Raw shape (one object or a list of them):
    {
      "track": "Monza",
      "players": [{"name": "alice", "car": "GT3"}, ...],     # only the first is used
      "sessions": [{"laps": [{"time": 95000, "valid": 1,      # only the first is used
                              "sectors": [30000, 32000, 33000]}]}]
    }

Rules
-----
- A session without track, car or username is skipped (never raised); the
  reasons are returned to the caller.
- A lap without a numeric `time` is dropped on its own; the session keeps the
  rest of its laps.
- `valid` defaults to 1, `sectors` to []. A non-numeric sector becomes None
  in place, so later sectors keep their position.
- Lap numbers are the raw `lap` indices when every kept lap has one and no two
  repeat; otherwise every lap is numbered by its position in the raw list.
- A session's identity is its explicit id or start timestamp when the payload
  carries one, else `<source>#<index>` when the caller names a source file.
  Without either it is None and the driver stands in for it (see lap_store).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

log = logging.getLogger("apex.ingest")

Number = Union[int, float]

# Looked up on the session object, then on its first `sessions` entry.
_SESSION_ID_KEYS = (
    "session_id", "sessionId", "id", "uid", "uuid",
    "start_time", "startTime", "started_at", "startedAt", "timestamp", "date",
)


# ------------------------------------------------------------
# Canonical shapes
# ------------------------------------------------------------

@dataclass
class CanonicalLap:
    lap_no: int
    time: Number
    valid: int = 1
    sectors: List[Optional[Number]] = field(default_factory=list)


@dataclass
class CanonicalSession:
    track: str
    car: str
    username: str
    laps: List[CanonicalLap] = field(default_factory=list)
    session_id: Optional[str] = None


@dataclass
class SkippedSession:
    index: int                # position in the incoming batch
    reasons: List[str]        # e.g. ["missing car", "missing username"]


@dataclass
class NormalizeResult:
    sessions: List[CanonicalSession] = field(default_factory=list)
    skipped: List[SkippedSession] = field(default_factory=list)
    dropped_laps: int = 0


# ------------------------------------------------------------
# Raw schema (pydantic)
# ------------------------------------------------------------

def _text(v: Any) -> Optional[str]:
    """Non-empty trimmed string or None. Numbers are accepted as names."""
    if isinstance(v, bool) or v is None:
        return None
    if isinstance(v, (int, float)):
        v = str(v)
    if not isinstance(v, str):
        return None
    s = v.strip()
    return s or None


class RawLap(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: Number
    lap: Optional[int] = None
    valid: int = 1
    sectors: List[Optional[Number]] = []

    @field_validator("time", mode="before")
    @classmethod
    def _require_number(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("lap time must be a number")
        return v

    @field_validator("lap", mode="before")
    @classmethod
    def _lenient_lap_index(cls, v):
        # A garbled index is not worth losing the lap over; position is used instead.
        if isinstance(v, int) and not isinstance(v, bool) and v >= 0:
            return v
        return None

    @field_validator("valid", mode="before")
    @classmethod
    def _coerce_valid(cls, v):
        if v is None:
            return 1
        if isinstance(v, str):
            sv = v.strip().lower()
            if sv in ("0", "false", "no", "n", "off"):
                return 0
            return 1
        return 1 if v else 0

    @field_validator("sectors", mode="before")
    @classmethod
    def _clean_sectors(cls, v):
        if not isinstance(v, list):
            return []
        return [s if isinstance(s, (int, float)) and not isinstance(s, bool) else None for s in v]


class RawPlayer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    car: Optional[str] = None

    @field_validator("name", "car", mode="before")
    @classmethod
    def _trim(cls, v):
        return _text(v)


class RawSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    track: Optional[str] = None
    players: List[Any] = []
    sessions: List[Any] = []

    @field_validator("track", mode="before")
    @classmethod
    def _trim(cls, v):
        return _text(v)

    @field_validator("players", "sessions", mode="before")
    @classmethod
    def _listify(cls, v):
        return v if isinstance(v, list) else []

    def first_player(self) -> RawPlayer:
        if self.players and isinstance(self.players[0], dict):
            return RawPlayer.model_validate(self.players[0])
        return RawPlayer()

    def first_laps(self) -> List[Any]:
        if self.sessions and isinstance(self.sessions[0], dict):
            laps = self.sessions[0].get("laps")
            if isinstance(laps, list):
                return laps
        return []


# ------------------------------------------------------------
# Normalizer
# ------------------------------------------------------------

def _session_identity(item: Dict[str, Any]) -> Optional[str]:
    """Explicit session id or start timestamp, if the client sent one."""
    scopes = [item]
    inner = item.get("sessions")
    if isinstance(inner, list) and inner and isinstance(inner[0], dict):
        scopes.append(inner[0])
    for scope in scopes:
        for key in _SESSION_ID_KEYS:
            found = _text(scope.get(key))
            if found:
                return f"{key}={found}"
    return None


def _normalize_laps(raw_laps: List[Any]) -> Tuple[List[CanonicalLap], int]:
    kept: List[Tuple[int, RawLap]] = []
    dropped = 0
    for pos, item in enumerate(raw_laps):
        if not isinstance(item, dict):
            dropped += 1
            continue
        try:
            kept.append((pos, RawLap.model_validate(item)))
        except ValidationError as ve:
            log.debug("dropping lap %d: %s", pos, ve.errors())
            dropped += 1

    # raw indices only when they number every kept lap uniquely
    raw_nos = [rl.lap for _, rl in kept]
    use_raw = None not in raw_nos and len(set(raw_nos)) == len(raw_nos)
    if raw_nos and not use_raw and any(n is not None for n in raw_nos):
        log.debug("lap indices %s incomplete or repeated; numbering by position", raw_nos)

    laps = [
        CanonicalLap(
            lap_no=rl.lap if use_raw else pos,
            time=rl.time,
            valid=rl.valid,
            sectors=list(rl.sectors),
        )
        for pos, rl in kept
    ]
    return laps, dropped


def normalize(raw: Any, source: Optional[str] = None) -> NormalizeResult:
    """
    Normalize one raw session object or a list of them.

    Never raises on bad input: incomplete sessions end up in `skipped`,
    unusable laps are counted in `dropped_laps`. `source` names the file the
    payload came from; it identifies sessions that carry no id of their own.
    """
    items = raw if isinstance(raw, list) else [raw]
    out = NormalizeResult()

    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            out.skipped.append(SkippedSession(idx, ["not an object"]))
            log.warning("Incomplete session data at index %d: not an object", idx)
            continue

        rs = RawSession.model_validate(item)
        player = rs.first_player()

        reasons = []
        if not rs.track:
            reasons.append("missing track")
        if not player.car:
            reasons.append("missing car")
        if not player.name:
            reasons.append("missing username")
        if reasons:
            out.skipped.append(SkippedSession(idx, reasons))
            log.warning(
                "Incomplete session data at index %d: track=%r car=%r username=%r",
                idx, rs.track, player.car, player.name,
            )
            continue

        session_id = _session_identity(item)
        if session_id is None and source:
            session_id = f"file={source}#{idx}"

        laps, dropped = _normalize_laps(rs.first_laps())
        out.dropped_laps += dropped
        out.sessions.append(CanonicalSession(
            track=rs.track,
            car=player.car,
            username=player.name,
            laps=laps,
            session_id=session_id,
        ))

    return out


def skipped_as_dicts(skipped: List[SkippedSession]) -> List[Dict[str, Any]]:
    return [{"index": s.index, "reasons": list(s.reasons)} for s in skipped]
