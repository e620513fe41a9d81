from __future__ import annotations

import logging
import os
from dataclasses import dataclass

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    store_timeout: float = 5.0
    store_retries: int = 2
    retry_backoff: float = 0.05
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("QUICKCOLLAB_DATABASE_URL", ""),
            store_timeout=float(os.getenv("QUICKCOLLAB_STORE_TIMEOUT", "5.0")),
            store_retries=int(os.getenv("QUICKCOLLAB_STORE_RETRIES", "2")),
            retry_backoff=float(os.getenv("QUICKCOLLAB_RETRY_BACKOFF", "0.05")),
            log_level=os.getenv("QUICKCOLLAB_LOG_LEVEL", "INFO"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the ``quickcollab`` logger tree."""
    logger = logging.getLogger("quickcollab")
    logger.setLevel(level.upper())
    if not any(getattr(h, "_quickcollab", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._quickcollab = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
