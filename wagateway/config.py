"""Environment-driven configuration for the gateway service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


LOGGER = logging.getLogger("wagateway.config")

DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_PORT = 3000


class ConfigError(RuntimeError):
    """Raised when a required setting is missing or invalid."""


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    base_url: str
    base_url_defaulted: bool
    port: int
    log_dir: Path
    log_level: str
    data_dir: Path
    client_factory: Optional[str]
    admin_token: Optional[str]
    register_timeout: float
    http_timeout: float

    @property
    def auth_dir(self) -> Path:
        return self.data_dir / "auth"

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _normalize_base_url(raw: str | None) -> tuple[str, bool]:
    cleaned = (raw or "").strip().rstrip("/")
    if not cleaned:
        return DEFAULT_BASE_URL, True
    return cleaned, False


def _resolve_log_dir(raw: str | None) -> Path:
    cleaned = (raw or "").strip()
    if not cleaned:
        raise ConfigError("LOG_DIR is not set")
    return Path(cleaned).expanduser()


def gateway_config() -> GatewayConfig:
    base_url, defaulted = _normalize_base_url(os.getenv("BASE_URL"))
    data_dir = Path((os.getenv("DATA_DIR") or "").strip() or ".").expanduser().resolve()
    factory = (os.getenv("WA_CLIENT_FACTORY") or "").strip() or None
    admin_token = (os.getenv("ADMIN_TOKEN") or "").strip() or None
    level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO"

    return GatewayConfig(
        base_url=base_url,
        base_url_defaulted=defaulted,
        port=_coerce_int(os.getenv("PORT"), DEFAULT_PORT),
        log_dir=_resolve_log_dir(os.getenv("LOG_DIR")),
        log_level=level,
        data_dir=data_dir,
        client_factory=factory,
        admin_token=admin_token,
        register_timeout=_parse_duration(os.getenv("REGISTER_TIMEOUT"), default=60.0),
        http_timeout=_parse_duration(os.getenv("HTTP_TIMEOUT"), default=10.0),
    )


__all__ = [
    "ConfigError",
    "DEFAULT_BASE_URL",
    "DEFAULT_PORT",
    "GatewayConfig",
    "gateway_config",
]
