"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    db_path: str
    bots_file: str
    exchange_factory: str | None
    log_level: str
    log_file: str | None
    metrics_port: int
    orphan_tolerance: float
    fill_skew_ms: int
    fill_lookback_days: int
    fill_page_limit: int
    fill_max_pages: int
    retention_days: int
    release_locks_on_start: bool

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        cfg = cls(
            db_path=os.getenv("RECON_DB_PATH", "state/reconciler.db"),
            bots_file=os.getenv("RECON_BOTS_FILE", "configs/bots.yaml"),
            exchange_factory=os.getenv("RECON_EXCHANGE_FACTORY") or None,
            log_level=os.getenv("RECON_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("RECON_LOG_FILE", "reconciler.log") or None,
            metrics_port=_int_env("RECON_METRICS_PORT", 9096),
            orphan_tolerance=_float_env("RECON_ORPHAN_TOLERANCE", 0.1),
            fill_skew_ms=_int_env("RECON_FILL_SKEW_MS", 5000),
            fill_lookback_days=_int_env("RECON_FILL_LOOKBACK_DAYS", 30),
            fill_page_limit=_int_env("RECON_FILL_PAGE_LIMIT", 1000),
            fill_max_pages=_int_env("RECON_FILL_MAX_PAGES", 5),
            retention_days=_int_env("RECON_RETENTION_DAYS", 0),
            release_locks_on_start=env_bool("RECON_RELEASE_LOCKS_ON_START", True),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if not self.db_path:
            raise ValueError("RECON_DB_PATH must be set")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"RECON_LOG_LEVEL={self.log_level} is not a logging level")
        if self.orphan_tolerance < 0:
            raise ValueError("RECON_ORPHAN_TOLERANCE must be >= 0")
        if self.fill_skew_ms < 0:
            raise ValueError("RECON_FILL_SKEW_MS must be >= 0")
        if self.fill_lookback_days <= 0:
            raise ValueError("RECON_FILL_LOOKBACK_DAYS must be > 0")
        if self.fill_page_limit <= 0 or self.fill_max_pages <= 0:
            raise ValueError("Fill paging limits must be > 0")
        if self.retention_days < 0:
            raise ValueError("RECON_RETENTION_DAYS must be >= 0")

        if self.orphan_tolerance > 1.0:
            logging.getLogger("reconciler").warning(
                f"WARNING: RECON_ORPHAN_TOLERANCE is {self.orphan_tolerance}. "
                "A loose tolerance may attribute unrelated fills to tracked positions."
            )
        if self.exchange_factory is None:
            logging.getLogger("reconciler").warning(
                "WARNING: RECON_EXCHANGE_FACTORY not set. "
                "Bots cannot reach the exchange until a client factory is configured."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("reconciler")
    payload = {
        "event": "config_loaded",
        "db_path": cfg.db_path,
        "bots_file": cfg.bots_file,
        "orphan_tolerance": cfg.orphan_tolerance,
        "fill_skew_ms": cfg.fill_skew_ms,
        "fill_lookback_days": cfg.fill_lookback_days,
        "retention_days": cfg.retention_days,
    }
    logger.info(json.dumps(payload))
