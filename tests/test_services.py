from fastapi.testclient import TestClient

from services.echo.app import NOT_SET, app


def test_root_echoes_injected_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://db:5432/shop")
    monkeypatch.delenv("CACHE_SIZE", raising=False)
    monkeypatch.delenv("ECHO_KEYS", raising=False)
    monkeypatch.delenv("CCR_CONFIG_DIR", raising=False)

    body = TestClient(app).get("/").json()
    assert body["environment"]["DATABASE_URL"] == "postgres://db:5432/shop"
    assert body["environment"]["CACHE_SIZE"] == NOT_SET
    assert body["files"] == {}


def test_custom_keys_and_mounted_files_are_read_per_request(monkeypatch, tmp_path):
    (tmp_path / "app").mkdir()
    conf = tmp_path / "app" / "app.conf"
    conf.write_text("x=1", encoding="utf-8")
    monkeypatch.setenv("ECHO_KEYS", "FEATURE_FLAG")
    monkeypatch.setenv("FEATURE_FLAG", "on")
    monkeypatch.setenv("CCR_CONFIG_DIR", str(tmp_path))
    client = TestClient(app)

    assert client.get("/").json() == {"environment": {"FEATURE_FLAG": "on"}, "files": {"app": {"app.conf": "x=1"}}}
    conf.write_text("x=2", encoding="utf-8")
    assert client.get("/").json()["files"]["app"]["app.conf"] == "x=2"


def test_health():
    body = TestClient(app).get("/health").json()
    assert body["status"] == "healthy"
    assert "timestamp" in body
