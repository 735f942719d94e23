from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping

from risk.models import PNL_ALERT_TYPES, PNL_TRIGGER_TYPES, AccountSnapshot, PnLAlertConfig, RiskProfile
from risk.settings import ValidationError, _as_number


_UNITS = {
    "daily_usdt": "USDT",
    "daily_percent": "%",
    "total_usdt": "USDT",
    "total_percent": "%",
    "unrealized_usdt": "USDT",
}

_LABELS = {
    "daily_usdt": "Daily",
    "daily_percent": "Daily",
    "total_usdt": "Total",
    "total_percent": "Total",
    "unrealized_usdt": "Unrealized",
}


@dataclass
class PnLAlertHit:
    config: PnLAlertConfig
    value: float
    description: str
    notified: bool = False

    @property
    def dedup_key(self) -> str:
        return f"pnl_{self.config.alert_type}_{self.config.trigger_type}_{self.config.id}"

    @property
    def title(self) -> str:
        if self.config.alert_type == "loss":
            return f"Loss alert - {self.config.trigger_type}"
        return f"Target reached - {self.config.trigger_type}"

    @property
    def notification_type(self) -> str:
        if self.config.sound_enabled:
            return "pnl_loss_alert" if self.config.alert_type == "loss" else "pnl_gain_alert"
        return "warning" if self.config.alert_type == "loss" else "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "value": self.value,
            "description": self.description,
            "notified": self.notified,
        }


def pnl_figures(profile: RiskProfile, snapshot: AccountSnapshot) -> Dict[str, float]:
    """Signed PnL figures keyed by trigger type. Percentages need an initial balance."""
    initial = profile.initial_balance or 0.0
    today = snapshot.realized_pnl_today
    total = snapshot.total_balance - initial if initial > 0 else 0.0
    return {
        "daily_usdt": today,
        "daily_percent": today * 100 / initial if initial > 0 else 0.0,
        "total_usdt": total,
        "total_percent": total * 100 / initial if initial > 0 else 0.0,
        "unrealized_usdt": snapshot.unrealized_pnl,
    }


def _describe(alert_config: PnLAlertConfig, magnitude: float) -> str:
    unit = _UNITS[alert_config.trigger_type]
    label = _LABELS[alert_config.trigger_type]
    amount = f"{magnitude:.2f}%" if unit == "%" else f"{magnitude:.2f} USDT"
    limit = f"{alert_config.threshold:g}%" if unit == "%" else f"{alert_config.threshold:g} USDT"
    if alert_config.alert_type == "loss":
        return f"{label} loss of {amount} (limit: {limit})"
    return f"{label} gain of {amount} (target: {limit})"


def check_pnl_alerts(configs: Iterable[PnLAlertConfig], figures: Mapping[str, float]) -> List[PnLAlertHit]:
    """Return the enabled rules whose figure is on the right side of its threshold.

    A loss rule needs a negative figure whose magnitude reaches the threshold;
    a gain rule needs a positive figure at or above it.
    """
    hits = []
    for alert_config in configs:
        if not alert_config.enabled:
            continue
        value = figures.get(alert_config.trigger_type)
        if value is None:
            continue
        if alert_config.alert_type == "loss":
            triggered = value < 0 and abs(value) >= alert_config.threshold
        else:
            triggered = value > 0 and value >= alert_config.threshold
        if triggered:
            hits.append(PnLAlertHit(alert_config, value, _describe(alert_config, abs(value))))
    return hits


def validate_pnl_alert(user_id: str, payload: Mapping[str, Any]) -> PnLAlertConfig:
    known = {"id", "alert_type", "trigger_type", "threshold", "enabled", "sound_enabled"}
    for field_name in payload:
        if field_name not in known:
            raise ValidationError(field_name, "unknown setting")

    alert_type = payload.get("alert_type")
    if alert_type not in PNL_ALERT_TYPES:
        raise ValidationError("alert_type", f"must be one of {', '.join(PNL_ALERT_TYPES)}")
    trigger_type = payload.get("trigger_type")
    if trigger_type not in PNL_TRIGGER_TYPES:
        raise ValidationError("trigger_type", f"must be one of {', '.join(PNL_TRIGGER_TYPES)}")
    threshold = _as_number("threshold", payload.get("threshold"))
    if threshold <= 0:
        raise ValidationError("threshold", "must be positive")

    flags = {}
    for field_name in ("enabled", "sound_enabled"):
        value = payload.get(field_name, True)
        if not isinstance(value, bool):
            raise ValidationError(field_name, "must be a boolean")
        flags[field_name] = value

    config_id = payload.get("id")
    if config_id is not None and (isinstance(config_id, bool) or not isinstance(config_id, int)):
        raise ValidationError("id", "must be an integer")

    return PnLAlertConfig(
        user_id=user_id,
        alert_type=alert_type,
        trigger_type=trigger_type,
        threshold=threshold,
        id=config_id,
        **flags,
    )
