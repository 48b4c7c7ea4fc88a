"""
apex_backend/watch_service.py
-----------------------------
Watch folder for session result files.

Sims drop one JSON file per finished session into a results folder. Once a
folder is set, new *.json files appearing in it are fed to ingest_file(),
the same path the HTTP endpoint uses. Files already present when watching
starts are left alone.

The active folder is persisted to a small YAML state file so it comes back
after a restart.

Threading
---------
One daemon thread polls the folder every `poll_interval_s`. A new file is
ingested on the poll after it was first seen, once its size and mtime have
stopped changing, so half-written files are not picked up.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Tuple

import yaml

from .errors import ApexError, ConfigError, WatchStateError
from .ingest import IngestResult, ingest_file

log = logging.getLogger("apex.watch")

IngestFn = Callable[[Path, Path], IngestResult]


def _validate_dir(folder_path: Any) -> Path:
    if not isinstance(folder_path, str) or not folder_path.strip():
        raise ConfigError("folderPath must be a non-empty string")
    p = Path(folder_path.strip()).expanduser()
    if not p.is_dir():
        raise ConfigError(f"Folder does not exist: {folder_path}")
    return p.resolve()


class WatchService:
    def __init__(
        self,
        db_path: str | Path,
        state_path: str | Path,
        poll_interval_s: float = 1.0,
        ingest_fn: Optional[IngestFn] = None,
    ):
        self.db_path = Path(db_path)
        self.state_path = Path(state_path)
        self.poll_interval_s = float(poll_interval_s)
        self._ingest = ingest_fn or ingest_file

        self._lock = threading.RLock()
        self._poll_lock = threading.Lock()
        self._path: Optional[Path] = None
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()

        # per watched folder
        self._seen: Set[Path] = set()
        self._pending: Dict[Path, Tuple[int, float]] = {}

        self.files_ingested = 0
        self.files_failed = 0
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------
    # State file
    # ------------------------------------------------------------

    def load_state(self) -> Optional[Path]:
        """Read the persisted folder and start watching it if it still exists."""
        try:
            text = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as ex:
            log.warning("Could not read %s: %s", self.state_path, ex)
            return None

        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as ex:
            log.warning("Could not parse %s: %s", self.state_path, ex)
            return None

        saved = data.get("watch_path") if isinstance(data, dict) else None
        if not saved:
            return None
        try:
            folder = _validate_dir(saved)
        except ConfigError:
            log.warning("Saved watch path no longer exists: %s", saved)
            return None

        self.start(folder)
        return folder

    def save_state(self, folder: Path) -> None:
        """Atomically rewrite the state file. Raises WatchStateError on failure."""
        tmp = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(yaml.safe_dump({"watch_path": str(folder)}, sort_keys=False), encoding="utf-8")
            os.replace(tmp, self.state_path)
        except OSError as ex:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise WatchStateError(f"Could not save watch path to {self.state_path}: {ex}") from ex

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def set_path(self, folder_path: Any) -> Path:
        """
        Switch to a new folder. An invalid folder (ConfigError) or an
        unwritable state file (WatchStateError) leaves the running watcher and
        the saved state as they were.
        """
        folder = _validate_dir(folder_path)
        with self._lock:
            self.save_state(folder)
            self.start(folder)
        log.info("Now watching: %s", folder)
        return folder

    def start(self, folder: Path) -> None:
        with self._lock:
            self.stop()
            with self._poll_lock:
                self._path = Path(folder)
                self._seen = self._scan()
                self._pending = {}
            # fresh event per thread so a slow old thread can never be revived
            self._stop = threading.Event()
            self._t = threading.Thread(
                target=self._run_loop,
                args=(self._stop,),
                name=f"WatchService[{self._path.name}]",
                daemon=True,
            )
            self._t.start()

    def stop(self) -> None:
        with self._lock:
            self._stop.set()
            if self._t and self._t.is_alive() and self._t is not threading.current_thread():
                self._t.join(timeout=2.0)
            self._t = None

    def is_running(self) -> bool:
        return bool(self._t and self._t.is_alive())

    def status(self) -> Dict[str, Any]:
        return {
            "watch_path": str(self._path) if self._path else None,
            "running": self.is_running(),
            "files_ingested": self.files_ingested,
            "files_failed": self.files_failed,
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------

    def _scan(self) -> Set[Path]:
        if self._path is None:
            return set()
        try:
            return {p for p in self._path.iterdir() if p.suffix.lower() == ".json" and p.is_file()}
        except OSError as ex:
            log.warning("Cannot list %s: %s", self._path, ex)
            return set()

    def poll_once(self) -> int:
        """One scan of the folder. Returns how many files were handed to ingest."""
        handed = 0
        with self._poll_lock:
            for p in sorted(self._scan() - self._seen):
                try:
                    st = p.stat()
                except OSError:
                    continue
                sig = (st.st_size, st.st_mtime)
                if self._pending.get(p) != sig:
                    # first sighting, or still being written
                    self._pending[p] = sig
                    continue
                self._pending.pop(p, None)
                self._seen.add(p)
                self._process(p)
                handed += 1
        return handed

    def _process(self, p: Path) -> None:
        try:
            res = self._ingest(self.db_path, p)
        except ApexError as ex:
            self.files_failed += 1
            self.last_error = f"{p.name}: {ex}"
            log.warning("Upload failed: %s (%s)", p, ex)
            return
        self.files_ingested += 1
        log.info(
            "Uploaded: %s (sessions=%d laps=%d skipped=%d)",
            p.name, res.uploaded_sessions, res.uploaded_laps, res.skipped_sessions,
        )

    def _run_loop(self, stop_evt: threading.Event) -> None:
        while not stop_evt.wait(self.poll_interval_s):
            try:
                self.poll_once()
            except Exception:
                log.exception("watch loop error on %s", self._path)
