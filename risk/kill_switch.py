import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from api.alerts import alert_webhook
from api.metrics import metrics
from ingest.account_client import AccountClient
from store.base import AlertStore


logger = logging.getLogger(__name__)


@dataclass
class ClosedPosition:
    symbol: str
    side: str
    quantity: float
    order_id: Optional[int] = None


@dataclass
class CloseFailure:
    symbol: str
    side: str
    quantity: float
    error: str


@dataclass
class KillSwitchReport:
    total_positions: int = 0
    closed: List[ClosedPosition] = field(default_factory=list)
    errors: List[CloseFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_positions": self.total_positions,
            "closed": [c.__dict__ for c in self.closed],
            "errors": [e.__dict__ for e in self.errors],
        }


class KillSwitchExecutor:
    """Flattens every open futures position with one opposite-side MARKET order each.

    Orders are never retried; a failed symbol is reported and the remaining
    symbols are still attempted.
    """

    def __init__(self, store: Optional[AlertStore] = None, reduce_only: bool = True):
        self.store = store
        self.reduce_only = reduce_only

    async def flatten_all_positions(
        self,
        client: AccountClient,
        user_id: Optional[str] = None,
        reason: str = "manual",
    ) -> KillSwitchReport:
        logger.error("Kill switch triggered for %s: %s", user_id, reason)
        metrics.record_kill_switch(reason)
        positions = await client.fetch_open_positions()
        report = KillSwitchReport(total_positions=len(positions))

        for position in positions:
            if not position.is_open:
                continue
            side = position.close_side
            quantity = position.close_quantity
            try:
                ack = await client.place_market_order(
                    position.symbol,
                    side,
                    quantity,
                    reduce_only=self.reduce_only,
                )
            except Exception as exc:
                logger.error("Kill switch close %s %s %s failed: %s", position.symbol, side, quantity, exc)
                report.errors.append(CloseFailure(position.symbol, side, quantity, str(exc)))
                metrics.record_kill_switch_order(False)
                continue
            order_id = ack.exchange_order_id if ack else None
            logger.info("Kill switch closed %s %s %s (order %s)", position.symbol, side, quantity, order_id)
            report.closed.append(ClosedPosition(position.symbol, side, quantity, order_id))
            metrics.record_kill_switch_order(True)

        if user_id is not None:
            await self._notify(user_id, reason, report)
        return report

    async def _notify(self, user_id: str, reason: str, report: KillSwitchReport) -> None:
        if report.total_positions == 0:
            description = "No open positions to close"
        else:
            description = f"{len(report.closed)} of {report.total_positions} positions closed"
            if report.errors:
                failed = ", ".join(e.symbol for e in report.errors)
                description += f"; failed: {failed}"
        if self.store is not None:
            try:
                await self.store.insert_notification(
                    user_id,
                    "Kill switch executed",
                    description,
                    type="position_closure",
                )
            except Exception as exc:
                logger.error("Kill switch notification for %s failed: %s", user_id, exc)
        await alert_webhook.kill_switch_alert(user_id, reason, len(report.closed), len(report.errors))
