from __future__ import annotations

import logging
from typing import Any, Optional, Union

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .backend import BackendClient
from .client import load_client_factory
from .config import gateway_config
from .manager import SessionManager
from .sender import SendError
from .storage import SessionStorage, sanitize_phone


logger = logging.getLogger("wagateway.api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _as_text(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


class RegisterRequest(BaseModel):
    phone: str = Field(..., min_length=1)
    lineId: Optional[str] = None

    @field_validator("phone", "lineId", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return _as_text(value)


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from", min_length=1)
    to: str = Field(..., min_length=1)
    message: str
    contentType: str = "text"
    filePath: Optional[str] = None
    bitrixMessageId: Optional[Union[str, int]] = None

    @field_validator("from_", "to", "filePath", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return _as_text(value)

    @field_validator("contentType", mode="before")
    @classmethod
    def _default_content_type(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "text"
        return value.strip() if isinstance(value, str) else value


def _json(body: dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))


def _error(status_code: int, message: str) -> JSONResponse:
    return _json({"status": "error", "message": message}, status_code)


def _missing_fields(exc: RequestValidationError) -> list[str]:
    names: list[str] = []
    for error in exc.errors():
        loc = [part for part in error.get("loc", ()) if part != "body"]
        if not loc:
            continue
        name = str(loc[-1])
        if name not in names:
            names.append(name)
    return names


def create_app() -> FastAPI:
    cfg = gateway_config()
    storage = SessionStorage(cfg.data_dir, auth_dir=cfg.auth_dir, cache_dir=cfg.cache_dir)
    backend = BackendClient(cfg.base_url, timeout=cfg.http_timeout)
    manager = SessionManager(
        storage,
        backend,
        load_client_factory(cfg.client_factory),
        register_timeout=cfg.register_timeout,
    )
    logger.info(
        "stage=config_loaded base_url=%s data_dir=%s client_factory=%s",
        cfg.base_url,
        cfg.data_dir,
        cfg.client_factory or "unset",
    )

    app = FastAPI(title="wagateway")
    app.state.session_manager = manager
    app.state.config = cfg

    def _enforce_admin(request: Request, route: str) -> JSONResponse | None:
        if not cfg.admin_token:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != cfg.admin_token:
            logger.warning("event=admin_token_invalid route=%s", route)
            return _error(401, "not_authorized")
        return None

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        fields = _missing_fields(exc)
        message = f"Invalid or missing fields: {', '.join(fields)}" if fields else "Invalid request body"
        logger.warning("stage=request_invalid path=%s fields=%s", request.url.path, fields)
        return _error(400, message)

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):  # pragma: no cover - safety net
        logger.exception("stage=request_failed path=%s", request.url.path)
        return _error(500, "Internal server error")

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        if cfg.base_url_defaulted:
            logger.warning("BASE_URL is not set; using default %s", cfg.base_url)
        if not cfg.client_factory:
            logger.warning("WA_CLIENT_FACTORY is not set; sessions cannot start")
        await manager.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    def _safe_stats_snapshot() -> dict[str, int]:
        try:
            snapshot = manager.stats_snapshot()
            if isinstance(snapshot, dict):
                return snapshot
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
        return {}

    @app.post("/registerwhatsapp")
    async def register_whatsapp(request: Request, payload: RegisterRequest = Body(...)):
        denied = _enforce_admin(request, "registerwhatsapp")
        if denied is not None:
            return denied
        if not sanitize_phone(payload.phone):
            return _error(400, "Phone number is required")
        logger.info("stage=register_request phone=%s line_id=%s", payload.phone, payload.lineId)
        try:
            result = await manager.register(payload.phone, payload.lineId)
        except Exception:
            logger.exception("stage=register_failed phone=%s", payload.phone)
            return _error(500, "Failed to register WhatsApp session")
        return _json(result.body, result.status_code)

    @app.post("/sendmsg")
    async def send_message(request: Request, payload: SendRequest = Body(...)):
        denied = _enforce_admin(request, "sendmsg")
        if denied is not None:
            return denied
        if payload.contentType == "text" and not payload.message:
            return _error(400, "Invalid or missing fields: message")
        try:
            result = await manager.send(
                payload.from_,
                payload.to,
                payload.message,
                content_type=payload.contentType,
                file_path=payload.filePath,
            )
        except SendError as exc:
            return _error(exc.status_code, str(exc))
        except Exception:
            logger.exception("stage=send_failed from=%s to=%s", payload.from_, payload.to)
            return _error(500, "Failed to send message")
        return _json(
            {
                "status": "sent",
                "messageId": result.message_id,
                "bitrixMessageId": payload.bitrixMessageId,
            }
        )

    @app.get("/status/{phone}")
    async def session_status(request: Request, phone: str):
        denied = _enforce_admin(request, "status")
        if denied is not None:
            return denied
        return _json(manager.status(phone))

    @app.delete("/sessiondelete/{phone}")
    async def session_delete(request: Request, phone: str):
        denied = _enforce_admin(request, "sessiondelete")
        if denied is not None:
            return denied
        key = sanitize_phone(phone)
        try:
            existed = await manager.delete_session(key)
        except Exception:
            logger.exception("stage=delete_failed phone=%s", key)
            return _error(500, "Failed to delete session")
        return _json(
            {
                "status": "deleted",
                "phone": key,
                "message": "Session deleted" if existed else "No active session; stored data cleared",
            }
        )

    @app.get("/health")
    async def health():
        return {"ok": True, "sessions": _safe_stats_snapshot()}

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app", "RegisterRequest", "SendRequest"]
