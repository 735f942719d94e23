import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from config import config
from ingest.binance_rest import BinanceRESTClient
from risk.models import AccountSnapshot, Position


__all__ = ["AccountClient", "Credentials", "OrderAck"]

MARKET_USDT = "USDT"
MARKET_COIN = "COIN"

_INCOME_PATHS = {
    MARKET_USDT: "/fapi/v1/income",
    MARKET_COIN: "/dapi/v1/income",
}


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str


@dataclass
class OrderAck:
    """Normalized order acknowledgement returned by the futures API."""

    symbol: str
    side: str
    quantity: float
    type: str = "MARKET"
    status: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "quantity": self.quantity,
            "status": self.status,
            "exchange_order_id": self.exchange_order_id,
        }


class AccountClient:
    """Typed adapter over the signed futures REST API for one set of credentials."""

    def __init__(self, credentials: Credentials) -> None:
        exchange_cfg = config.section("exchange")
        self.credentials = credentials
        self.quote_asset = exchange_cfg.get("quote_asset", "USDT")
        self._coin_base_url = exchange_cfg.get("coin_base_url", "https://dapi.binance.com")
        self._rest: Optional[BinanceRESTClient] = None
        self._coin_rest: Optional[BinanceRESTClient] = None
        self._lock = asyncio.Lock()

    def _client(self, market_type: str = MARKET_USDT) -> BinanceRESTClient:
        if market_type == MARKET_COIN:
            if self._coin_rest is None:
                self._coin_rest = BinanceRESTClient(
                    api_key=self.credentials.api_key,
                    api_secret=self.credentials.api_secret,
                    base_url=self._coin_base_url,
                )
            return self._coin_rest
        if self._rest is None:
            self._rest = BinanceRESTClient(
                api_key=self.credentials.api_key,
                api_secret=self.credentials.api_secret,
            )
        return self._rest

    async def close(self) -> None:
        async with self._lock:
            for rest in (self._rest, self._coin_rest):
                if rest is not None:
                    await rest.close()
            self._rest = None
            self._coin_rest = None

    async def fetch_account_snapshot(self) -> AccountSnapshot:
        rest = self._client()
        balances = await rest.get("/fapi/v2/balance", signed=True)
        positions = await self.fetch_open_positions()
        start_ms, end_ms = _utc_day_bounds_ms(datetime.now(timezone.utc))
        realized_today = await self.fetch_realized_pnl(start_ms, end_ms)

        total, available, unrealized = self._parse_balance(balances)
        return AccountSnapshot(
            total_balance=total,
            available_balance=available,
            used_margin=max(total - available, 0.0),
            unrealized_pnl=unrealized,
            realized_pnl_today=realized_today,
            positions=positions,
        )

    async def fetch_open_positions(self) -> List[Position]:
        rest = self._client()
        payload = await rest.get("/fapi/v2/positionRisk", signed=True)
        if not isinstance(payload, list):
            return []
        positions: List[Position] = []
        for item in payload:
            position = self._parse_position(item)
            if position is not None and position.is_open:
                positions.append(position)
        return positions

    async def fetch_realized_pnl(
        self,
        start_ms: int,
        end_ms: int,
        market_type: str = MARKET_USDT,
    ) -> float:
        """Sum REALIZED_PNL income records between start_ms and end_ms."""
        path = _INCOME_PATHS.get(market_type)
        if path is None:
            raise ValueError(f"Unknown market type: {market_type}")
        rest = self._client(market_type)
        payload = await rest.get(
            path,
            params={
                "incomeType": "REALIZED_PNL",
                "startTime": start_ms,
                "endTime": end_ms,
                "limit": 1000,
            },
            signed=True,
        )
        if not isinstance(payload, list):
            return 0.0
        total = 0.0
        for item in payload:
            total += self._as_float(item.get("income")) or 0.0
        return total

    async def fetch_wallet_balance(self, market_type: str = MARKET_USDT) -> Optional[float]:
        rest = self._client(market_type)
        path = "/dapi/v1/balance" if market_type == MARKET_COIN else "/fapi/v2/balance"
        payload = await rest.get(path, signed=True)
        if not isinstance(payload, list):
            return None
        for entry in payload:
            if market_type == MARKET_USDT and entry.get("asset") != self.quote_asset:
                continue
            balance = self._as_float(entry.get("balance"))
            if balance is not None:
                return balance
        return None

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reduce_only: bool = True,
    ) -> Optional[OrderAck]:
        rest = self._client()
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "MARKET",
            "quantity": _format_quantity(quantity),
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        data = await rest.post("/fapi/v1/order", params=params, signed=True)
        return self._parse_order_ack(data)

    def _parse_balance(self, payload: Any) -> Tuple[float, float, float]:
        if not isinstance(payload, list):
            return 0.0, 0.0, 0.0
        for entry in payload:
            if entry.get("asset") != self.quote_asset:
                continue
            total = self._as_float(entry.get("balance")) or 0.0
            available = self._as_float(entry.get("availableBalance")) or 0.0
            unrealized = self._as_float(entry.get("crossUnPnl")) or 0.0
            return total, available, unrealized
        return 0.0, 0.0, 0.0

    def _parse_position(self, payload: Any) -> Optional[Position]:
        if not isinstance(payload, dict):
            return None
        amount = self._as_float(payload.get("positionAmt"))
        if amount is None:
            return None
        return Position(
            symbol=payload.get("symbol", ""),
            signed_amount=amount,
            unrealized_profit=self._as_float(payload.get("unRealizedProfit")) or 0.0,
            leverage=self._as_float(payload.get("leverage")) or 1.0,
            margin_ratio=self._as_float(payload.get("marginRatio")) or 0.0,
            entry_price=self._as_float(payload.get("entryPrice")),
            mark_price=self._as_float(payload.get("markPrice")),
            liquidation_price=self._as_float(payload.get("liquidationPrice")),
        )

    def _parse_order_ack(self, payload: Any) -> Optional[OrderAck]:
        if not isinstance(payload, dict):
            return None
        qty_val = payload.get("origQty") or payload.get("executedQty") or payload.get("quantity")
        return OrderAck(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "MARKET",
            quantity=self._as_float(qty_val) or 0.0,
            status=payload.get("status"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


def _utc_day_bounds_ms(now: datetime) -> Tuple[int, int]:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(start.timestamp() * 1000), int(now.timestamp() * 1000)


def _format_quantity(quantity: float) -> str:
    # Binance rejects scientific notation
    text = f"{quantity:.8f}".rstrip("0").rstrip(".")
    return text or "0"
