from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import time


class SirenType(Enum):
    POLICE = "police"
    AMBULANCE = "ambulance"
    FIRE = "fire"
    AIR_RAID = "air-raid"
    ALARM_CLOCK = "alarm-clock"
    COINS = "coins"

    @classmethod
    def parse(cls, value: Any, default: "SirenType" = None) -> "SirenType":
        if isinstance(value, SirenType):
            return value
        try:
            return cls(str(value))
        except ValueError:
            if default is not None:
                return default
            raise


class RiskLevel(Enum):
    NONE = 0
    WARNING = 1
    DANGER = 2
    CRITICAL = 3
    EMERGENCY = 4

    def __lt__(self, other: "RiskLevel") -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.value < other.value

    @property
    def label(self) -> str:
        return self.name.lower()


class AlertType(Enum):
    CRITICAL_LOSS = "critical_loss"
    GAIN = "gain"
    WARNING = "warning"
    DANGER = "danger"
    EMERGENCY = "emergency"

    @property
    def severity(self) -> int:
        return _ALERT_SEVERITY[self]

    @classmethod
    def for_level(cls, level: RiskLevel) -> Optional["AlertType"]:
        return _LEVEL_ALERTS.get(level)


_ALERT_SEVERITY = {
    AlertType.GAIN: 0,
    AlertType.WARNING: 1,
    AlertType.DANGER: 2,
    AlertType.CRITICAL_LOSS: 3,
    AlertType.EMERGENCY: 4,
}

_LEVEL_ALERTS = {
    RiskLevel.WARNING: AlertType.WARNING,
    RiskLevel.DANGER: AlertType.DANGER,
    RiskLevel.CRITICAL: AlertType.CRITICAL_LOSS,
    RiskLevel.EMERGENCY: AlertType.EMERGENCY,
}


@dataclass
class RiskProfile:
    user_id: str
    initial_balance: float
    loss_threshold_percent: float = 5.0
    gain_threshold_percent: float = 5.0
    loss_enabled: bool = True
    gain_enabled: bool = False
    siren_type: SirenType = SirenType.POLICE
    kill_switch_enabled: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RiskProfile":
        return cls(
            user_id=str(row["user_id"]),
            initial_balance=float(row.get("initial_balance") or 0.0),
            loss_threshold_percent=float(row.get("loss_threshold_percent") or 5.0),
            gain_threshold_percent=float(row.get("gain_threshold_percent") or 5.0),
            loss_enabled=bool(row.get("loss_enabled", True)),
            gain_enabled=bool(row.get("gain_enabled", False)),
            siren_type=SirenType.parse(row.get("siren_type") or "police", SirenType.POLICE),
            kill_switch_enabled=bool(row.get("kill_switch_enabled", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "initial_balance": self.initial_balance,
            "loss_threshold_percent": self.loss_threshold_percent,
            "gain_threshold_percent": self.gain_threshold_percent,
            "loss_enabled": self.loss_enabled,
            "gain_enabled": self.gain_enabled,
            "siren_type": self.siren_type.value,
            "kill_switch_enabled": self.kill_switch_enabled,
        }


PNL_ALERT_TYPES = ("loss", "gain")
PNL_TRIGGER_TYPES = ("daily_usdt", "daily_percent", "total_usdt", "total_percent", "unrealized_usdt")


@dataclass
class PnLAlertConfig:
    """A user rule on a PnL figure, checked apart from the loss ladder."""

    user_id: str
    alert_type: str
    trigger_type: str
    threshold: float
    enabled: bool = True
    sound_enabled: bool = True
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PnLAlertConfig":
        return cls(
            id=row.get("id"),
            user_id=str(row["user_id"]),
            alert_type=row["alert_type"],
            trigger_type=row["trigger_type"],
            threshold=float(row["threshold"]),
            enabled=bool(row.get("enabled", True)),
            sound_enabled=bool(row.get("sound_enabled", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_type": self.alert_type,
            "trigger_type": self.trigger_type,
            "threshold": self.threshold,
            "enabled": self.enabled,
            "sound_enabled": self.sound_enabled,
        }


@dataclass
class Position:
    symbol: str
    signed_amount: float
    unrealized_profit: float = 0.0
    leverage: float = 1.0
    margin_ratio: float = 0.0
    entry_price: Optional[float] = None
    mark_price: Optional[float] = None
    liquidation_price: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.signed_amount != 0

    @property
    def close_side(self) -> str:
        return "SELL" if self.signed_amount > 0 else "BUY"

    @property
    def close_quantity(self) -> float:
        return abs(self.signed_amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "amount": self.signed_amount,
            "unrealized_profit": self.unrealized_profit,
            "leverage": self.leverage,
            "margin_ratio": self.margin_ratio,
            "entry_price": self.entry_price,
            "mark_price": self.mark_price,
            "liquidation_price": self.liquidation_price,
        }


@dataclass
class AccountSnapshot:
    total_balance: float
    available_balance: float
    used_margin: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl_today: float = 0.0
    positions: List[Position] = field(default_factory=list)
    fetched_at: float = field(default_factory=time.time)

    def critical_positions(self, margin_ratio_limit: float = 80.0) -> List[Position]:
        return [p for p in self.positions if p.margin_ratio > margin_ratio_limit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": {
                "total": self.total_balance,
                "available": self.available_balance,
                "used_margin": self.used_margin,
            },
            "pnl": {
                "today": self.realized_pnl_today,
                "unrealized": self.unrealized_pnl,
            },
            "positions": [p.to_dict() for p in self.positions],
            "fetched_at": self.fetched_at,
        }


@dataclass(frozen=True)
class LatchState:
    """Rising-edge memory carried between evaluations of one user.

    ``alerted_level`` is the highest loss level already alerted; a level
    alerts again only after it was released by recovery.
    """

    alerted_level: RiskLevel = RiskLevel.NONE
    gain_latched: bool = False
    last_level: RiskLevel = RiskLevel.NONE

    @property
    def loss_latched(self) -> bool:
        return self.alerted_level is not RiskLevel.NONE


@dataclass
class EvaluationResult:
    level: RiskLevel
    should_alert: bool
    percent_at_trigger: Optional[float]
    alert_type: Optional[AlertType]
    loss_amount: float
    loss_percent: float
    gain_percent: float
    risk_limit_percent: float
    latch: LatchState
    loss_cleared: bool = False
    gain_cleared: bool = False
    cleared_alerts: List[AlertType] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.label,
            "should_alert": self.should_alert,
            "percent_at_trigger": self.percent_at_trigger,
            "alert_type": self.alert_type.value if self.alert_type else None,
            "loss_amount": self.loss_amount,
            "loss_percent": self.loss_percent,
            "gain_percent": self.gain_percent,
            "risk_limit_percent": self.risk_limit_percent,
            "loss_cleared": self.loss_cleared,
            "gain_cleared": self.gain_cleared,
            "cleared_alerts": [a.value for a in self.cleared_alerts],
            "skipped": self.skipped,
        }


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class AlertRecord:
    user_id: str
    alert_type: AlertType
    percent_at_trigger: float
    alert_day: date
    id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    message: str = ""
    balance_at_alert: Optional[float] = None
    is_test: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AlertRecord":
        return cls(
            id=row["id"],
            user_id=str(row["user_id"]),
            alert_type=AlertType(row["alert_type"]),
            percent_at_trigger=float(row["percent_at_trigger"]),
            alert_day=row["alert_day"],
            created_at=row["created_at"],
            acknowledged=bool(row["acknowledged"]),
            acknowledged_at=row.get("acknowledged_at"),
            message=row.get("message") or "",
            balance_at_alert=row.get("balance_at_alert"),
            is_test=bool(row.get("is_test", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_type": self.alert_type.value,
            "percent_at_trigger": self.percent_at_trigger,
            "alert_day": self.alert_day.isoformat(),
            "created_at": self.created_at.isoformat(),
            "acknowledged": self.acknowledged,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "message": self.message,
            "balance_at_alert": self.balance_at_alert,
            "is_test": self.is_test,
        }


@dataclass
class Notification:
    user_id: str
    title: str
    description: str
    type: str = "info"
    id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_read: bool = False
    dedup_key: Optional[str] = None
    dedup_day: Optional[date] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Notification":
        return cls(
            id=row["id"],
            user_id=str(row["user_id"]),
            title=row["title"],
            description=row["description"],
            type=row["type"],
            created_at=row["created_at"],
            is_read=bool(row["is_read"]),
            dedup_key=row.get("dedup_key"),
            dedup_day=row.get("dedup_day"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "created_at": self.created_at.isoformat(),
            "is_read": self.is_read,
        }


@dataclass
class DailyPnL:
    user_id: str
    day: date
    market_type: str
    pnl_usd: float
    pnl_percentage: float


@dataclass
class BinanceAccount:
    user_id: str
    account_name: str
    api_key: str
    api_secret: str
    id: Optional[int] = None
    is_active: bool = True


@dataclass
class Subscription:
    id: Any
    user_id: str
    plan_type: str
    status: str
    expires_at: datetime
    auto_renew: bool = False
