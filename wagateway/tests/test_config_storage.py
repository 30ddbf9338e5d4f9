from __future__ import annotations

import logging
from pathlib import Path

import pytest

from wagateway.config import DEFAULT_BASE_URL, ConfigError, gateway_config
from wagateway.logging_config import configure_logging
from wagateway.storage import SessionStorage, sanitize_phone


def test_config_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("BASE_URL", "PORT", "DATA_DIR", "WA_CLIENT_FACTORY", "ADMIN_TOKEN", "REGISTER_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))

    cfg = gateway_config()

    assert cfg.base_url == DEFAULT_BASE_URL
    assert cfg.base_url_defaulted
    assert cfg.port == 3000
    assert cfg.register_timeout == 60.0
    assert cfg.client_factory is None


def test_config_reads_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("BASE_URL", "https://crm.example.com/")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("REGISTER_TIMEOUT", "15s")

    cfg = gateway_config()

    assert cfg.base_url == "https://crm.example.com"
    assert not cfg.base_url_defaulted
    assert cfg.port == 8080
    assert cfg.register_timeout == 15.0
    assert cfg.auth_dir == tmp_path.resolve() / "auth"


def test_missing_log_dir_is_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOG_DIR", raising=False)
    with pytest.raises(ConfigError):
        gateway_config()


def test_configure_logging_writes_daily_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_file = configure_logging(tmp_path / "logs", "DEBUG")
        logging.getLogger("wagateway.test").info("stage=logging_check")
        for handler in root.handlers:
            handler.flush()

        assert log_file == tmp_path / "logs" / "wagateway.log"
        assert "stage=logging_check" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            if handler not in saved_handlers:
                root.removeHandler(handler)
                handler.close()
        for handler in saved_handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(saved_level)


def test_sanitize_phone() -> None:
    assert sanitize_phone("+1 (555) 123-4567") == "1555123-4567"
    assert sanitize_phone(15551234567) == "15551234567"
    assert sanitize_phone(None) == ""


@pytest.mark.anyio
async def test_purge_removes_credentials_and_cache(tmp_path: Path) -> None:
    storage = SessionStorage(tmp_path)
    storage.credential_dir("+1555").mkdir(parents=True)
    (storage.credential_dir("1555") / "state.json").write_text("{}")
    storage.session_cache_dir("1555").mkdir(parents=True)

    assert storage.has_credentials("1555")
    removed = await storage.purge("1555")

    assert removed == {"credentials": True, "cache": True}
    assert not storage.has_credentials("1555")
    assert await storage.purge("1555") == {"credentials": False, "cache": False}
