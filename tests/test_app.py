# tests/test_app.py
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch
from ghproxy import main
import ghproxy.config as config


# -----------------------
# Test root endpoint
# -----------------------
def test_root_endpoint():
    client = TestClient(main.app)
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "GitHub edge proxy" in data["message"]


# -----------------------
# Test routers are included
# -----------------------
def test_routers_included():
    routes = [r.path for r in main.app.routes]
    assert f"{config.MOUNT_PATH}/_/ip" in routes
    assert f"{config.MOUNT_PATH}/_/auth" in routes
    assert f"{config.MOUNT_PATH}/__/stats" in routes
    assert f"{config.MOUNT_PATH}/{{path:path}}" in routes


# -----------------------
# Test lifespan logging
# -----------------------
@pytest.mark.asyncio
async def test_lifespan_logging(monkeypatch):
    class DummyState:
        pass

    class DummyApp:
        state = DummyState()

    monkeypatch.setattr(config, "KV_BACKEND", "memory")
    dummy_app = DummyApp()

    with patch("ghproxy.main.logger") as mock_logger:
        async with main.lifespan(dummy_app):
            mock_logger.info.assert_any_call(f"KV_BACKEND => memory ({config.DATA_DIR})")
            assert dummy_app.state.engine.auth_store is not None

        mock_logger.info.assert_any_call("Shutting down FastAPI app")


# -----------------------
# Test that TestClient triggers lifespan logging
# -----------------------
def test_client_triggers_lifespan(monkeypatch):
    monkeypatch.setattr(config, "KV_BACKEND", "none")
    with patch("ghproxy.main.logger") as mock_logger:
        with TestClient(main.app) as client_ctx:
            response = client_ctx.get("/")
            assert response.status_code == 200
            assert main.app.state.engine.auth_store is None

        mock_logger.info.assert_any_call("Shutting down FastAPI app")
