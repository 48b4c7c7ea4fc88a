"""
HTTP surface, driven through fastapi's TestClient against a throwaway DB.

Covers:
1. POST /api/laps success, skips, bad body, and the 500 partial-result path
2. GET /api/best-laps (with valid_only) and GET /api/lap-summary
3. POST /api/set-watch-path / GET /api/watch-path
4. POST /api/live-telemetry validation and decoding
5. Health and readiness endpoints
"""

import struct
import sys
import tempfile
from pathlib import Path

from fastapi.testclient import TestClient

from apex_backend.db_schema import connect
from apex_backend.server import create_app

MONZA = [{
    "track": "Monza",
    "players": [{"name": "alice", "car": "GT3"}],
    "sessions": [{"laps": [{"time": 95000, "valid": 1, "sectors": [30000, 32000, 33000]}]}],
}]


def _cfg(tmp: str) -> dict:
    return {
        "app": {"persistence": {"sqlite_path": str(Path(tmp) / "apex.sqlite")}},
        "watch": {"state_path": str(Path(tmp) / "watch_state.yaml"), "poll_interval_s": 3600},
        "telemetry": {"udp": {"enabled": False}},
    }


def test_upload_and_read_back():
    with tempfile.TemporaryDirectory() as tmp:
        with TestClient(create_app(_cfg(tmp))) as client:
            r = client.post("/api/laps", json=MONZA)
            assert r.status_code == 200, r.text
            body = r.json()
            assert body["success"] is True
            assert body["uploaded_sessions"] == 1
            assert body["uploaded_laps"] == 1
            assert body["skipped_sessions"] == 0

            r = client.get("/api/best-laps")
            assert r.status_code == 200
            assert r.json() == [
                {"username": "alice", "track": "Monza", "car": "GT3", "best_lap_time": 95000}
            ]

            r = client.get("/api/lap-summary")
            assert r.status_code == 200
            assert r.json() == {
                "total_laps": 1,
                "distinct_tracks": 1,
                "distinct_cars": 1,
                "fastest_lap": {
                    "lap_time": 95000,
                    "username": "alice",
                    "car": "GT3",
                    "track": "Monza",
                    "sectors": [30000, 32000, 33000],
                },
            }
            print(f"[OK] summary {r.json()}")


def test_single_object_body_and_skips():
    with tempfile.TemporaryDirectory() as tmp:
        with TestClient(create_app(_cfg(tmp))) as client:
            r = client.post("/api/laps", json=MONZA[0])
            assert r.status_code == 200
            assert r.json()["uploaded_sessions"] == 1

            r = client.post("/api/laps", json=[{"track": "Spa"}, {}])
            assert r.status_code == 200, "nothing valid is still a success"
            body = r.json()
            assert body["uploaded_sessions"] == 0
            assert body["skipped_sessions"] == 2

            r = client.post("/api/laps", json="hello")
            assert r.status_code == 400


def test_best_laps_per_user_and_valid_only():
    with tempfile.TemporaryDirectory() as tmp:
        with TestClient(create_app(_cfg(tmp))) as client:
            client.post("/api/laps", json=[
                {
                    "track": "Monza",
                    "players": [{"name": "alice", "car": "GT3"}],
                    "sessions": [{"laps": [{"time": 96000}, {"time": 94000, "valid": 0}]}],
                },
                {
                    "track": "Monza",
                    "players": [{"name": "bob", "car": "GT3"}],
                    "sessions": [{"laps": [{"time": 95500}]}],
                },
            ])

            rows = client.get("/api/best-laps").json()
            assert [(r["username"], r["best_lap_time"]) for r in rows] == [("alice", 94000), ("bob", 95500)]

            rows = client.get("/api/best-laps", params={"valid_only": "true"}).json()
            assert [(r["username"], r["best_lap_time"]) for r in rows] == [("bob", 95500), ("alice", 96000)]


def test_empty_summary():
    with tempfile.TemporaryDirectory() as tmp:
        with TestClient(create_app(_cfg(tmp))) as client:
            assert client.get("/api/best-laps").json() == []
            assert client.get("/api/lap-summary").json() == {
                "total_laps": 0, "distinct_tracks": 0, "distinct_cars": 0, "fastest_lap": None,
            }


def test_store_failure_returns_partial_result():
    with tempfile.TemporaryDirectory() as tmp:
        cfg = _cfg(tmp)
        with TestClient(create_app(cfg)) as client:
            with connect(cfg["app"]["persistence"]["sqlite_path"]) as conn:
                conn.executescript("""
                    CREATE TRIGGER reject_negative BEFORE INSERT ON laps
                    WHEN NEW.lap_time < 0
                    BEGIN SELECT RAISE(ABORT, 'negative lap time'); END;
                """)

            r = client.post("/api/laps", json=MONZA + [{
                "track": "Spa",
                "players": [{"name": "bob", "car": "F40"}],
                "sessions": [{"laps": [{"time": -5}]}],
            }])
            assert r.status_code == 500
            body = r.json()
            assert body["success"] is False
            assert body["uploaded_sessions"] == 1
            assert body["uploaded_laps"] == 1


def test_watch_path_endpoints():
    with tempfile.TemporaryDirectory() as tmp:
        folder = Path(tmp) / "results"
        folder.mkdir()
        with TestClient(create_app(_cfg(tmp))) as client:
            r = client.get("/api/watch-path")
            assert r.json()["watch_path"] is None

            r = client.post("/api/set-watch-path", json={"folderPath": str(Path(tmp) / "missing")})
            assert r.status_code == 400
            assert r.json() == {"success": False, "error": "Folder does not exist"}

            r = client.post("/api/set-watch-path", json={})
            assert r.status_code == 400

            r = client.post("/api/set-watch-path", json={"folderPath": str(folder)})
            assert r.status_code == 200
            assert r.json() == {"success": True, "message": f"Now watching: {folder.resolve()}"}

            st = client.get("/api/watch-path").json()
            assert st["watch_path"] == str(folder.resolve())
            assert st["running"] is True


def test_watch_path_not_saved_changes_nothing():
    with tempfile.TemporaryDirectory() as tmp:
        folder = Path(tmp) / "results"
        folder.mkdir()
        blocker = Path(tmp) / "blocker"
        blocker.write_text("", encoding="utf-8")
        cfg = _cfg(tmp)
        cfg["watch"]["state_path"] = str(blocker / "watch_state.yaml")

        with TestClient(create_app(cfg)) as client:
            r = client.post("/api/set-watch-path", json={"folderPath": str(folder)})
            assert r.status_code == 400
            assert r.json() == {"success": False, "error": "Could not save watch path"}

            st = client.get("/api/watch-path").json()
            assert st["watch_path"] is None and st["running"] is False


def test_live_telemetry():
    with tempfile.TemporaryDirectory() as tmp:
        with TestClient(create_app(_cfg(tmp))) as client:
            good = struct.pack("<iffi", 1, 120.5, 6500.0, 3).hex()

            r = client.post("/api/live-telemetry", json={"relayId": "rig-1", "payload": good})
            assert r.status_code == 200
            assert r.json() == {
                "success": True,
                "relayId": "rig-1",
                "telemetry": {"packet_id": 1, "speed_kmh": 120.5, "rpm": 6500.0, "gear": 3},
            }

            assert client.post("/api/live-telemetry", json={"payload": good}).status_code == 400
            assert client.post("/api/live-telemetry", json={"relayId": "rig-1"}).status_code == 400

            r = client.post("/api/live-telemetry", json={"relayId": "rig-1", "payload": good[:30]})
            assert r.status_code == 422
            assert r.json()["error"] == "Invalid telemetry packet"
            r = client.post("/api/live-telemetry", json={"relayId": "rig-1", "payload": "not-hex"})
            assert r.status_code == 422

            st = client.get("/api/telemetry/status").json()
            assert st["enabled"] is False and st["running"] is False


def test_health_endpoints():
    with tempfile.TemporaryDirectory() as tmp:
        with TestClient(create_app(_cfg(tmp))) as client:
            assert client.get("/healthz").json()["status"] == "ok"
            r = client.get("/readyz")
            assert r.status_code == 200
            assert r.json()["status"] == "ok"


if __name__ == "__main__":
    try:
        test_upload_and_read_back()
        test_single_object_body_and_skips()
        test_best_laps_per_user_and_valid_only()
        test_empty_summary()
        test_store_failure_returns_partial_result()
        test_watch_path_endpoints()
        test_watch_path_not_saved_changes_nothing()
        test_live_telemetry()
        test_health_endpoints()
        print("\n[SUCCESS] API tests passed")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n[FAIL] TEST FAILED: {e}")
        sys.exit(1)
