from pathlib import Path

from fastapi.testclient import TestClient


def _write_config(tmp_path: Path) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)

    (config_dir / "engine.yaml").write_text(
        f"""
store:
  backend: sqlite
  path: {str((tmp_path / "test.db").resolve())}
telemetry:
  auto_start_poller: false
""".strip()
        + "\n",
        encoding="utf-8",
    )

    (config_dir / "pipelines.yaml").write_text(
        """
auto_start: false
pipelines:
  bins:
    interval_seconds: 999
""".strip()
        + "\n",
        encoding="utf-8",
    )

    return config_dir


def _client(monkeypatch, tmp_path: Path) -> TestClient:
    config_dir = _write_config(tmp_path)
    monkeypatch.setenv("BINSYNC_CONFIG_DIR", str(config_dir))

    from binsync.main import app

    return TestClient(app)


def test_health_endpoint(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "storage": "ok"}


def test_bin_lifecycle(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        created = client.post("/api/bins", json={"id": "BIN-1", "location": "Lab", "fillLevel": 40})
        assert created.status_code == 201
        assert created.json()["fill_level"] == 40.0

        patched = client.patch("/api/bins/BIN-1", json={"fill_level": 90})
        assert patched.status_code == 200
        assert patched.json()["status"] == "critical"

        listed = client.get("/api/bins").json()
        assert [item["id"] for item in listed] == ["BIN-1"]

        history = client.get("/api/bins/BIN-1/history").json()
        assert history["count"] == 1
        assert history["items"][0]["new_fill"] == 90.0

        alerts = client.get("/api/alerts").json()
        assert [alert["type"] for alert in alerts] == ["bin_overflow"]

        deleted = client.delete("/api/bins/BIN-1", params={"deleted_by": "ops"})
        assert deleted.json() == {"ok": True, "bin_id": "BIN-1"}
        assert client.get("/api/bins/BIN-1").status_code == 404


def test_collection_verified_by_reading(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        client.post("/api/bins", json={"id": "BIN-1", "location": "Lab", "fill_level": 82})
        sensor = client.post("/api/sensors", json={"id": "S-1", "bin_id": "BIN-1"})
        assert sensor.status_code == 201
        assert sensor.json()["bin_id"] == "BIN-1"

        collection = client.post("/api/collections", json={"bin_id": "BIN-1", "driver_id": "driver-1"})
        assert collection.status_code == 201
        assert collection.json()["verification"] == "pending_sensor"

        reading = client.post("/api/bins/BIN-1/readings", json={"fill_level": 5})
        assert reading.status_code == 200
        assert reading.json()["status"] == "normal"

        [stored] = client.get("/api/collections", params={"driver_id": "driver-1"}).json()
        assert stored["verification"] == "sensor_verified"
        assert stored["collected_percent"] == 77.0


def test_sensor_for_unknown_bin_is_not_stored(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        response = client.post("/api/sensors", json={"id": "S-1", "bin_id": "BIN-404"})

        assert response.status_code == 404
        assert client.app.state.engine.repository.get_sensor("S-1") is None


def test_sensor_naive_timestamp_is_stored_as_utc(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        naive = client.post("/api/sensors", json={"id": "S-2", "last_update": "2025-03-09T08:00:00"})
        assert naive.status_code == 201
        assert naive.json()["last_update"].endswith("Z")


def test_not_found_and_validation_errors(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        missing = client.post("/api/collections", json={"bin_id": "BIN-404", "driver_id": "driver-1"})
        assert missing.status_code == 404

        assert client.post("/api/bins/BIN-404/readings", json={"fill_level": 5}).status_code == 404
        assert client.patch("/api/bins/BIN-404", json={"fill_level": 5}).status_code == 404
        assert client.post("/api/alerts/ALT-404/dismiss").status_code == 404
        assert client.post("/api/pipelines/trucks/trigger").status_code == 404

        client.post("/api/bins", json={"id": "BIN-1"})
        assert client.post("/api/bins/BIN-1/readings", json={}).status_code == 422
        assert client.post("/api/sensors", json={"bin_id": "BIN-1"}).status_code == 422


def test_trigger_pipeline_and_read_insights(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        client.post("/api/bins", json={"id": "BIN-1", "location": "Lab", "fill_level": 97})

        result = client.post("/api/pipelines/bins/trigger").json()
        assert result["ok"] is True
        assert result["pipeline"] == "bins"

        insights = client.get("/api/insights").json()
        assert insights["insights"]["bins"]["total"] == 1
        assert "bins" in client.get("/api/recommendations").json()

        metrics = client.get("/api/metrics").json()
        assert metrics["pipelines"]["bins"]["runs"] == 1

        report = client.get("/api/reports/optimizations", params={"range": "7d"}).json()
        assert report["type"] == "optimizations"
        assert report["options"] == {"range": "7d"}
        assert report["data"]["total"] == 1


def test_alert_dismissal(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        client.post("/api/bins", json={"id": "BIN-1", "fill_level": 10})
        client.patch("/api/bins/BIN-1", json={"temperature": 70})

        [alert] = client.get("/api/alerts").json()
        assert alert["type"] == "fire_risk"

        dismissed = client.post(f"/api/alerts/{alert['id']}/dismiss").json()
        assert dismissed["status"] == "dismissed"
        assert client.get("/api/alerts").json() == []
        assert len(client.get("/api/alerts", params={"status": "all"}).json()) == 1


def test_events_websocket_replays_latest(monkeypatch, tmp_path: Path) -> None:
    with _client(monkeypatch, tmp_path) as client:
        client.post("/api/bins", json={"id": "BIN-1", "location": "Lab", "fill_level": 10})

        with client.websocket_connect("/ws/events?topic=bin.added") as websocket:
            event = websocket.receive_json()

        assert event["topic"] == "bin.added"
        assert event["data"]["bin_id"] == "BIN-1"
