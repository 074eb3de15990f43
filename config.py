import os
import logging
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    database_url: str
    database_name: str
    store_backend: str
    bid_retry_limit: int
    sweep_interval_seconds: int
    log_level: str
    port: int
    cors_origins: List[str]


def get_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "")
    # No DATABASE_URL means a local in-memory store
    backend = os.getenv("STORE_BACKEND") or ("mongo" if database_url else "memory")
    origins = os.getenv("CORS_ORIGINS", "*")
    return Settings(
        database_url=database_url,
        database_name=os.getenv("DATABASE_NAME", "auction"),
        store_backend=backend.lower(),
        bid_retry_limit=int(os.getenv("BID_RETRY_LIMIT", "5")),
        sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "0")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=int(os.getenv("PORT", "8000")),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )


def configure_logging(level: str = None) -> None:
    level = level or get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
