import dataclasses
import logging
from typing import Any, Dict, Mapping, Optional

from api.alerts import AlertWebhook, alert_webhook
from config import config
from monitoring.async_utils import submit_background
from risk.models import RiskProfile, SirenType
from store.base import AlertStore


logger = logging.getLogger(__name__)

THRESHOLD_FIELDS = ("loss_threshold_percent", "gain_threshold_percent")
BOOLEAN_FIELDS = ("loss_enabled", "gain_enabled", "kill_switch_enabled")


class ValidationError(ValueError):
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


def _as_number(field: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError(field, "must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(field, "must be a number") from None
    if number != number or number in (float("inf"), float("-inf")):
        raise ValidationError(field, "must be a finite number")
    return number


def validate_settings(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Check a (partial) settings update and return the cleaned fields.

    Nothing is persisted here; a payload either validates completely or
    raises :class:`ValidationError`.
    """
    risk_cfg = config.section("risk")
    low = float(risk_cfg.get("min_threshold_pct", 1))
    high = float(risk_cfg.get("max_threshold_pct", 50))
    known = set(THRESHOLD_FIELDS) | set(BOOLEAN_FIELDS) | {"initial_balance", "siren_type"}

    cleaned: Dict[str, Any] = {}
    for field_name, value in payload.items():
        if field_name not in known:
            raise ValidationError(field_name, "unknown setting")
        if field_name in THRESHOLD_FIELDS:
            number = _as_number(field_name, value)
            if number < low:
                raise ValidationError(field_name, f"minimum is {low:g}%")
            if number > high:
                raise ValidationError(field_name, f"maximum is {high:g}%")
            cleaned[field_name] = number
        elif field_name in BOOLEAN_FIELDS:
            if not isinstance(value, bool):
                raise ValidationError(field_name, "must be a boolean")
            cleaned[field_name] = value
        elif field_name == "initial_balance":
            number = _as_number(field_name, value)
            if number < 0:
                raise ValidationError(field_name, "must not be negative")
            cleaned[field_name] = number
        elif field_name == "siren_type":
            try:
                cleaned[field_name] = SirenType.parse(value)
            except ValueError:
                raise ValidationError(field_name, f"unknown siren '{value}'") from None
    return cleaned


def _history_value(value: Any) -> Any:
    return value.value if isinstance(value, SirenType) else value


class SettingsService:
    def __init__(self, store: AlertStore, notifier: Optional[AlertWebhook] = None):
        self.store = store
        self.notifier = notifier or alert_webhook

    async def get(self, user_id: str) -> RiskProfile:
        profile = await self.store.get_risk_profile(user_id)
        return profile or RiskProfile(user_id=user_id, initial_balance=0.0)

    async def save(self, user_id: str, payload: Mapping[str, Any]) -> RiskProfile:
        updates = validate_settings(payload)
        current = await self.get(user_id)
        updated = dataclasses.replace(current, **updates)
        await self.store.save_risk_profile(updated)

        changes = {
            name: (_history_value(getattr(current, name)), _history_value(getattr(updated, name)))
            for name in updates
            if getattr(current, name) != getattr(updated, name)
        }
        if changes:
            try:
                await self.store.record_config_history(user_id, changes)
            except Exception as exc:
                logger.error("Recording settings history for %s failed: %s", user_id, exc)

        if current.loss_enabled and not updated.loss_enabled:
            logger.info("Loss alert disabled by %s, notifying admins", user_id)
            submit_background(
                self.notifier.loss_alert_disabled(user_id, current.loss_threshold_percent),
                "notify-admins-alert-disabled",
            )
        return updated
