from fastapi.testclient import TestClient

from quickcollab.main import app


def test_health():
    client = TestClient(app)
    assert client.get("/v1/health").json() == {"status": "ok"}
    assert client.get("/v1/version").json() == {"version": "1.0.0"}
