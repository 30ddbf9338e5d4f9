"""On-disk layout of per-phone credential, cache and media directories."""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path


LOGGER = logging.getLogger("wagateway.storage")

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_phone(phone: str | int | None) -> str:
    """Strip everything but ``[A-Za-z0-9_-]``; the result keys sessions and directories."""

    if phone is None:
        return ""
    return _UNSAFE_CHARS.sub("", str(phone).strip())


class SessionStorage:
    def __init__(self, data_dir: Path, *, auth_dir: Path | None = None, cache_dir: Path | None = None) -> None:
        self._data_dir = Path(data_dir)
        self._auth_dir = Path(auth_dir) if auth_dir else self._data_dir / "auth"
        self._cache_dir = Path(cache_dir) if cache_dir else self._data_dir / "cache"

    @property
    def auth_dir(self) -> Path:
        return self._auth_dir

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def ensure_roots(self) -> None:
        self._auth_dir.mkdir(parents=True, exist_ok=True)
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    def credential_dir(self, phone: str) -> Path:
        return self._auth_dir / f"session-{sanitize_phone(phone)}"

    def session_cache_dir(self, phone: str) -> Path:
        return self._cache_dir / f"cache-{sanitize_phone(phone)}"

    def files_dir(self, phone: str) -> Path:
        return self._data_dir / f"whatsapp_{sanitize_phone(phone)}" / "files"

    def has_credentials(self, phone: str) -> bool:
        return self.credential_dir(phone).exists()

    async def purge(self, phone: str) -> dict[str, bool]:
        """Remove credential and cache directories; failures are logged per directory."""

        removed: dict[str, bool] = {}
        for label, path in (
            ("credentials", self.credential_dir(phone)),
            ("cache", self.session_cache_dir(phone)),
        ):
            removed[label] = False
            if not path.exists():
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except OSError as exc:
                LOGGER.error(
                    "stage=purge_failed phone=%s kind=%s path=%s error=%s",
                    phone,
                    label,
                    path,
                    exc,
                )
                continue
            removed[label] = True
            LOGGER.info("stage=purged phone=%s kind=%s path=%s", phone, label, path)
        return removed


__all__ = ["SessionStorage", "sanitize_phone"]
