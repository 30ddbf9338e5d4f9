"""Executable entrypoint for the WhatsApp gateway service."""

from __future__ import annotations

import logging
import sys

import uvicorn

from .config import ConfigError, gateway_config
from .logging_config import configure_logging


def main() -> None:
    try:
        cfg = gateway_config()
    except ConfigError as exc:
        print(f"wagateway: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    log_file = configure_logging(cfg.log_dir, cfg.log_level)
    logger = logging.getLogger("wagateway")
    logger.info("stage=logging_ready file=%s level=%s", log_file, cfg.log_level)

    uvicorn.run(
        "wagateway.api:create_app",
        host="0.0.0.0",
        port=cfg.port,
        factory=True,
        workers=1,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
