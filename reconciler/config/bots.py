"""Load bot definitions from YAML.

File path via env `RECON_BOTS_FILE`, default `configs/bots.yaml`:

    bots:
      - bot_id: "7"
        client_id_prefix: "1234"
        api_key: ${BOT7_API_KEY}
        api_secret: ${BOT7_API_SECRET}
        created_at: "2026-01-15T00:00:00Z"
        stop_loss_pct: 0.02
        pending_order_timeout_sec: 300
        markets:
          SOL_USDC_PERP: {price_decimals: 2, quantity_decimals: 2}

`${VAR}` references are expanded from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

from reconciler.core.utils import parse_timestamp_ms, to_float

ALL_DUTIES: FrozenSet[str] = frozenset(
    {"protective_stops", "pending_orders", "orphan_orders", "reconciliation"}
)


@dataclass(frozen=True)
class MarketInfo:
    """Per-symbol metadata needed to build order bodies."""
    symbol: str
    price_decimals: int = 2
    quantity_decimals: int = 4
    tick_size: Optional[float] = None


@dataclass(frozen=True)
class BotConfig:
    bot_id: str
    client_id_prefix: str
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    market_type: str = "PERP"
    created_at_ms: Optional[int] = None
    stop_loss_pct: Optional[float] = None
    pending_order_timeout_sec: float = 0.0
    markets: Dict[str, MarketInfo] = field(default_factory=dict)
    duties: FrozenSet[str] = ALL_DUTIES
    enabled: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key) and bool(self.api_secret)

    def market(self, symbol: str) -> Optional[MarketInfo]:
        return self.markets.get(symbol)

    def validate(self) -> None:
        if not self.bot_id:
            raise ValueError("bot_id is required")
        # An empty prefix would claim every fill and order on the account
        if not self.client_id_prefix:
            raise ValueError(f"bot {self.bot_id}: client_id_prefix is required")
        if self.stop_loss_pct is not None and not 0 < self.stop_loss_pct < 1:
            raise ValueError(f"bot {self.bot_id}: stop_loss_pct must be in (0, 1)")
        if self.pending_order_timeout_sec < 0:
            raise ValueError(f"bot {self.bot_id}: pending_order_timeout_sec must be >= 0")
        unknown = set(self.duties) - ALL_DUTIES
        if unknown:
            raise ValueError(f"bot {self.bot_id}: unknown duties {sorted(unknown)}")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BotConfig":
        markets: Dict[str, MarketInfo] = {}
        for symbol, meta in (raw.get("markets") or {}).items():
            meta = meta or {}
            tick = meta.get("tick_size")
            markets[symbol] = MarketInfo(
                symbol=symbol,
                price_decimals=int(meta.get("price_decimals", 2)),
                quantity_decimals=int(meta.get("quantity_decimals", 4)),
                tick_size=to_float(tick) if tick is not None else None,
            )
        stop_loss = raw.get("stop_loss_pct")
        duties = raw.get("duties")
        cfg = cls(
            bot_id=str(raw.get("bot_id", "")).strip(),
            client_id_prefix=str(raw.get("client_id_prefix", "") or "").strip(),
            api_key=_expand(raw.get("api_key")),
            api_secret=_expand(raw.get("api_secret")),
            market_type=str(raw.get("market_type", "PERP")),
            created_at_ms=parse_timestamp_ms(raw.get("created_at")),
            stop_loss_pct=to_float(stop_loss) if stop_loss is not None else None,
            pending_order_timeout_sec=to_float(raw.get("pending_order_timeout_sec"), 0.0),
            markets=markets,
            duties=frozenset(duties) if duties is not None else ALL_DUTIES,
            enabled=bool(raw.get("enabled", True)),
        )
        cfg.validate()
        return cfg


def _expand(value: Any) -> Optional[str]:
    if value is None:
        return None
    out = os.path.expandvars(str(value)).strip()
    # Unresolved ${VAR} means the secret is missing
    if not out or out.startswith("$"):
        return None
    return out


def load_bot_configs(path: str | None = None) -> List[BotConfig]:
    if path is None:
        path = os.getenv("RECON_BOTS_FILE", "configs/bots.yaml")
    p = Path(path)
    if not p.exists():
        return []
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    entries = data.get("bots", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a list of bots")

    bots = [BotConfig.from_dict(entry) for entry in entries if isinstance(entry, dict)]
    seen: set[str] = set()
    for bot in bots:
        if bot.bot_id in seen:
            raise ValueError(f"{path}: duplicate bot_id {bot.bot_id}")
        seen.add(bot.bot_id)
    return [b for b in bots if b.enabled]
