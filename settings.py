import logging
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: str = "ledger"
    play_threshold: float = 0.25
    top_played_size: int = 3
    top_played_refresh_probability: float = 0.1
    repair_workers: int = 2
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME") or "ledger",
            play_threshold=float(os.getenv("PLAY_THRESHOLD", 0.25)),
            top_played_size=int(os.getenv("TOP_PLAYED_SIZE", 3)),
            top_played_refresh_probability=float(os.getenv("TOP_PLAYED_REFRESH_PROBABILITY", 0.1)),
            repair_workers=int(os.getenv("REPAIR_WORKERS", 2)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", 8000)),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
