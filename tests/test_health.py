from fastapi.testclient import TestClient

from till.core.config import Settings, get_settings, settings
from till.main import create_app


def test_health_returns_200(client):
    r = client.get("/health")
    assert r.status_code == 200
    js = r.json()
    assert js["status"] == "ok"
    assert js["rate_available"] is True
    assert js["active_cart"] == "A"


def test_health_reports_the_app_settings(erp, engine, tmp_path):
    cfg = Settings(app_env="staging", app_version="9.9.9", audit_file=str(tmp_path / "a.jsonl"))
    with TestClient(create_app(cfg, client=erp, bind=engine)) as c:
        js = c.get("/health").json()
    assert js["env"] == "staging"
    assert js["version"] == "9.9.9"


def test_get_settings_returns_the_singleton():
    assert get_settings() is settings
    assert isinstance(get_settings(), Settings)
