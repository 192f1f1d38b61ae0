"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import `reconciler`.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from reconciler.config.bots import BotConfig, MarketInfo  # noqa: E402
from reconciler.core.bot_context import BotContext  # noqa: E402
from reconciler.exchange.gateway import ExchangeGateway  # noqa: E402
from reconciler.ledger.database import Database  # noqa: E402
from reconciler.ledger.models import Order, OrderStatus  # noqa: E402
from reconciler.ledger.order_ledger import OrderLedger  # noqa: E402
from reconciler.locks.trading_lock import TradingLockManager  # noqa: E402

T0 = 1_760_000_000_000
PREFIX = "1234"
SYMBOL = "SOL_USDC_PERP"


class FakeExchange:
    """
    In-memory exchange client speaking Backpack-style payloads.

    Set a listing attribute to None to make that lookup "unknown".
    """

    def __init__(self) -> None:
        self.open_orders: Optional[List[Dict[str, Any]]] = []
        self.trigger_orders: Optional[List[Dict[str, Any]]] = []
        self.history: Dict[str, Optional[List[Dict[str, Any]]]] = {}
        self.fills: Optional[List[Dict[str, Any]]] = []
        self.executed: List[Dict[str, Any]] = []
        self.cancelled: List[tuple] = []
        self.fill_calls: List[Dict[str, Any]] = []
        self.cancel_response: Optional[Dict[str, Any]] = {}
        self.raise_on: Dict[str, BaseException] = {}
        self._next_id = 9000

    def _check(self, name: str) -> None:
        exc = self.raise_on.get(name)
        if exc is not None:
            raise exc

    async def get_open_orders(self, symbol, market_type):
        self._check("get_open_orders")
        if self.open_orders is None:
            return None
        return [o for o in self.open_orders if symbol is None or o.get("symbol") == symbol]

    async def get_open_trigger_orders(self, symbol, market_type):
        self._check("get_open_trigger_orders")
        if self.trigger_orders is None:
            return None
        return [o for o in self.trigger_orders if symbol is None or o.get("symbol") == symbol]

    async def get_order_history(self, order_id, symbol, limit, offset, market_type):
        self._check("get_order_history")
        return self.history.get(order_id, [])

    async def get_fill_history(
        self, symbol, order_id, from_ts, to_ts, limit, offset, fill_type, market_type, sort_direction
    ):
        self._check("get_fill_history")
        self.fill_calls.append({"from_ts": from_ts, "to_ts": to_ts, "limit": limit, "offset": offset})
        if self.fills is None:
            return None
        return self.fills[offset:offset + limit]

    async def execute_order(self, body):
        self._check("execute_order")
        self.executed.append(body)
        self._next_id += 1
        order_id = str(self._next_id)
        self.trigger_orders.append({
            "id": order_id,
            "symbol": body["symbol"],
            "side": body["side"],
            "quantity": body["quantity"],
            "triggerPrice": body["triggerPrice"],
            "orderType": body["orderType"],
            "clientId": body["clientId"],
            "status": "TriggerPending",
        })
        return {"id": order_id, "status": "TriggerPending"}

    async def cancel_open_order(self, symbol, order_id):
        self._check("cancel_open_order")
        self.cancelled.append((symbol, order_id))
        if self.cancel_response is not None and not self.cancel_response.get("error"):
            self.open_orders = [o for o in self.open_orders or [] if o.get("id") != order_id]
            self.trigger_orders = [o for o in self.trigger_orders or [] if o.get("id") != order_id]
        return self.cancel_response


def raw_order(order_id, side="Bid", client_id=PREFIX + "000001", symbol=SYMBOL,
              status="New", quantity="1", price="100", order_type="Limit", **extra):
    payload = {
        "id": order_id,
        "symbol": symbol,
        "side": side,
        "quantity": quantity,
        "price": price,
        "status": status,
        "orderType": order_type,
        "clientId": client_id,
    }
    payload.update(extra)
    return payload


def raw_fill(order_id, side, quantity, price, ts, client_id=None, symbol=SYMBOL, trade_id=None):
    return {
        "orderId": order_id,
        "symbol": symbol,
        "side": side,
        "quantity": str(quantity),
        "price": str(price),
        "timestamp": ts,
        "clientId": client_id,
        "tradeId": trade_id,
    }


def make_order(order_id, side="BUY", quantity=1.0, price=100.0, status=OrderStatus.PENDING,
               ts=T0, order_type="LIMIT", client_id=None, bot_id="7", symbol=SYMBOL):
    return Order(
        external_order_id=order_id,
        bot_id=bot_id,
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        order_type=order_type,
        client_id=client_id,
        status=status,
        timestamp_ms=ts,
    )


def make_bot_config(**overrides) -> BotConfig:
    values = dict(
        bot_id="7",
        client_id_prefix=PREFIX,
        api_key="key",
        api_secret="secret",
        created_at_ms=T0 - 60_000,
        stop_loss_pct=0.02,
        pending_order_timeout_sec=300,
        markets={SYMBOL: MarketInfo(SYMBOL, price_decimals=2, quantity_decimals=2)},
    )
    values.update(overrides)
    return BotConfig(**values)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "recon.db")
    yield database
    database.close()


@pytest.fixture
def ledger(db):
    return OrderLedger(db)


@pytest.fixture
def locks(db):
    return TradingLockManager(db)


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def bot_config():
    return make_bot_config()


@pytest.fixture
def ctx(bot_config, ledger, locks, exchange):
    gateway = ExchangeGateway(exchange, market_type="PERP", bot_id=bot_config.bot_id)
    return BotContext(config=bot_config, ledger=ledger, locks=locks, gateway=gateway)
