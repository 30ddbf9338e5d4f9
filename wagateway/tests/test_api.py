from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from wagateway.api import create_app
from wagateway.config import GatewayConfig
from wagateway.sender import ClientNotConnectedError, SendResult, UnsupportedContentTypeError
from wagateway.session import RegistrationResult


def _config(tmp_path: Path, admin_token: str | None = None) -> GatewayConfig:
    return GatewayConfig(
        base_url="http://backend.test",
        base_url_defaulted=False,
        port=3000,
        log_dir=tmp_path / "logs",
        log_level="INFO",
        data_dir=tmp_path,
        client_factory=None,
        admin_token=admin_token,
        register_timeout=1.0,
        http_timeout=1.0,
    )


class StubSessionManager:
    def __init__(self, *args, **kwargs) -> None:
        self.registered: list[tuple[str, str | None]] = []
        self.sent: list[dict[str, object]] = []
        self.deleted: list[str] = []
        self.register_result = RegistrationResult(200, {"status": "qr", "qr": "data:image/png;base64,AA", "phone": "1555"})
        self.send_error: Exception | None = None

    async def start(self) -> None:  # pragma: no cover - wiring
        return None

    async def shutdown(self) -> None:  # pragma: no cover - wiring
        return None

    async def register(self, phone: str, line_id: str | None = None) -> RegistrationResult:
        self.registered.append((phone, line_id))
        return self.register_result

    async def send(self, from_phone, to, message, *, content_type="text", file_path=None) -> SendResult:
        self.sent.append(
            {"from": from_phone, "to": to, "message": message, "content_type": content_type, "file_path": file_path}
        )
        if self.send_error is not None:
            raise self.send_error
        return SendResult(message_id="wamid.9", provider_id=True)

    def status(self, phone: str) -> dict[str, object]:
        return {"status": "connected", "phone": phone.lstrip("+"), "isAuthenticated": True}

    async def delete_session(self, phone: str, *, purge: bool = True) -> bool:
        self.deleted.append(phone)
        return False

    def stats_snapshot(self) -> dict[str, int]:
        return {"ready": 2}


@pytest.fixture
def app_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setattr("wagateway.api.gateway_config", lambda: _config(tmp_path))
    monkeypatch.setattr("wagateway.api.SessionManager", StubSessionManager)
    app = create_app()
    return TestClient(app), app.state.session_manager


def test_register_passes_phone_and_line(app_client) -> None:
    client, manager = app_client

    response = client.post("/registerwhatsapp", json={"phone": 15551234567, "lineId": 12})

    assert response.status_code == 200
    assert response.json()["status"] == "qr"
    assert manager.registered == [("15551234567", "12")]
    assert response.headers["Cache-Control"].startswith("no-store")


def test_register_requires_phone(app_client) -> None:
    client, manager = app_client

    missing = client.post("/registerwhatsapp", json={"lineId": "1"})
    blank = client.post("/registerwhatsapp", json={"phone": "+ "})

    assert missing.status_code == 400
    assert missing.json()["status"] == "error"
    assert "phone" in missing.json()["message"]
    assert blank.status_code == 400
    assert manager.registered == []


def test_register_propagates_manager_status(app_client) -> None:
    client, manager = app_client
    manager.register_result = RegistrationResult(401, {"status": "error", "message": "Authentication failed: x"})

    response = client.post("/registerwhatsapp", json={"phone": "1555"})

    assert response.status_code == 401
    assert response.json() == {"status": "error", "message": "Authentication failed: x"}


def test_sendmsg_echoes_bitrix_id(app_client) -> None:
    client, manager = app_client

    response = client.post(
        "/sendmsg",
        json={"from": "1555", "to": "1666", "message": "hi", "bitrixMessageId": "b-1"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "sent", "messageId": "wamid.9", "bitrixMessageId": "b-1"}
    assert manager.sent[0]["content_type"] == "text"


def test_sendmsg_missing_fields_is_400(app_client) -> None:
    client, manager = app_client

    response = client.post("/sendmsg", json={"from": "1555", "message": "hi"})

    assert response.status_code == 400
    assert response.json()["status"] == "error"
    assert "to" in response.json()["message"]
    assert manager.sent == []


def test_sendmsg_not_connected_is_404(app_client) -> None:
    client, manager = app_client
    manager.send_error = ClientNotConnectedError("1555")

    response = client.post("/sendmsg", json={"from": "1555", "to": "1666", "message": "hi"})

    assert response.status_code == 404
    assert response.json() == {"status": "error", "message": "Client is not connected"}


def test_sendmsg_unsupported_content_is_400(app_client) -> None:
    client, manager = app_client
    manager.send_error = UnsupportedContentTypeError("image/png")

    response = client.post(
        "/sendmsg",
        json={"from": "1555", "to": "1666", "message": "hi", "contentType": "image/png"},
    )

    assert response.status_code == 400
    assert "image/png" in response.json()["message"]


def test_sendmsg_unexpected_error_is_500(app_client) -> None:
    client, manager = app_client
    manager.send_error = RuntimeError("boom")

    response = client.post("/sendmsg", json={"from": "1555", "to": "1666", "message": "hi"})

    assert response.status_code == 500
    assert response.json()["status"] == "error"


def test_status_and_delete(app_client) -> None:
    client, manager = app_client

    status = client.get("/status/+1555")
    deleted = client.delete("/sessiondelete/+1555")

    assert status.json() == {"status": "connected", "phone": "1555", "isAuthenticated": True}
    assert deleted.status_code == 200
    assert deleted.json()["status"] == "deleted"
    assert deleted.json()["phone"] == "1555"
    assert manager.deleted == ["1555"]


def test_health_and_metrics(app_client) -> None:
    client, _ = app_client

    health = client.get("/health")
    metrics = client.get("/metrics")

    assert health.json() == {"ok": True, "sessions": {"ready": 2}}
    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")


def test_admin_token_enforced(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("wagateway.api.gateway_config", lambda: _config(tmp_path, admin_token="secret"))
    monkeypatch.setattr("wagateway.api.SessionManager", StubSessionManager)
    client = TestClient(create_app())

    denied = client.get("/status/1555")
    allowed = client.get("/status/1555", headers={"X-Admin-Token": "secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert client.get("/health").status_code == 200
