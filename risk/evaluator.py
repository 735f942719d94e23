import logging
from typing import Dict, List, Mapping, Optional, Tuple

from config import config
from risk.models import (
    AccountSnapshot,
    AlertType,
    EvaluationResult,
    LatchState,
    RiskLevel,
    RiskProfile,
)


logger = logging.getLogger(__name__)

DEFAULT_HYSTERESIS_PCT = 1.0
DEFAULT_BREAKPOINTS: Mapping[RiskLevel, float] = {
    RiskLevel.WARNING: 70.0,
    RiskLevel.DANGER: 85.0,
    RiskLevel.CRITICAL: 95.0,
    RiskLevel.EMERGENCY: 100.0,
}


def classify_level(
    risk_limit_percent: float,
    breakpoints: Mapping[RiskLevel, float] = DEFAULT_BREAKPOINTS,
) -> RiskLevel:
    level = RiskLevel.NONE
    for candidate in (RiskLevel.WARNING, RiskLevel.DANGER, RiskLevel.CRITICAL, RiskLevel.EMERGENCY):
        if risk_limit_percent >= breakpoints[candidate]:
            level = candidate
    return level


def _update_side(
    enabled: bool,
    percent: float,
    threshold: float,
    latched: bool,
    hysteresis: float,
) -> Tuple[bool, bool, bool]:
    """Return (fired, cleared, latched) for one side of the account."""
    if not enabled:
        return False, latched, False
    if percent >= threshold:
        if latched:
            return False, False, True
        return True, False, True
    if latched and percent < threshold - hysteresis:
        return False, True, False
    return False, False, latched


def _update_levels(
    level: RiskLevel,
    hold: RiskLevel,
    alerted: RiskLevel,
) -> Tuple[Optional[RiskLevel], List[RiskLevel], RiskLevel]:
    """Return (fired, released, alerted) for the loss ladder.

    A level fires once on the way up. An alerted level is held while the
    loss stays within the hysteresis band below its breakpoint.
    """
    fired = level if level.value > alerted.value else None
    held = RiskLevel(min(alerted.value, hold.value))
    next_alerted = RiskLevel(max(level.value, held.value))
    released = [
        candidate
        for candidate in (RiskLevel.EMERGENCY, RiskLevel.CRITICAL, RiskLevel.DANGER, RiskLevel.WARNING)
        if next_alerted.value < candidate.value <= alerted.value
    ]
    return fired, released, next_alerted


def evaluate(
    profile: RiskProfile,
    snapshot: AccountSnapshot,
    latch: Optional[LatchState] = None,
    hysteresis_pct: float = DEFAULT_HYSTERESIS_PCT,
    breakpoints: Mapping[RiskLevel, float] = DEFAULT_BREAKPOINTS,
) -> EvaluationResult:
    """Classify a snapshot against a risk profile.

    Pure: the previous LatchState goes in and the next one comes out.
    ``should_alert`` is set on the rising edge into each loss level (one
    alert per level) and on the transition into the gain target. A level
    re-arms once the loss falls ``hysteresis_pct`` points below its
    breakpoint.
    """
    latch = latch or LatchState()
    initial = profile.initial_balance
    if initial is None or initial <= 0:
        return EvaluationResult(
            level=RiskLevel.NONE,
            should_alert=False,
            percent_at_trigger=None,
            alert_type=None,
            loss_amount=0.0,
            loss_percent=0.0,
            gain_percent=0.0,
            risk_limit_percent=0.0,
            latch=latch,
            skipped=True,
        )

    loss_amount = initial - snapshot.total_balance
    loss_percent = loss_amount * 100 / initial
    gain_percent = -loss_percent

    risk_limit_percent = 0.0
    if profile.loss_threshold_percent > 0 and loss_percent > 0:
        risk_limit_percent = loss_percent * 100 / profile.loss_threshold_percent
    level = RiskLevel.NONE
    hold = RiskLevel.NONE
    if profile.loss_enabled and profile.loss_threshold_percent > 0:
        level = classify_level(risk_limit_percent, breakpoints)
        hold = classify_level((loss_percent + hysteresis_pct) * 100 / profile.loss_threshold_percent, breakpoints)

    fired_level, released, alerted_level = _update_levels(level, hold, latch.alerted_level)
    gain_fired, gain_cleared, gain_latched = _update_side(
        profile.gain_enabled,
        gain_percent,
        profile.gain_threshold_percent,
        latch.gain_latched,
        hysteresis_pct,
    )

    alert_type = None
    percent_at_trigger = None
    if fired_level is not None:
        alert_type = AlertType.for_level(fired_level)
        percent_at_trigger = loss_percent
    elif gain_fired:
        alert_type = AlertType.GAIN
        percent_at_trigger = gain_percent

    cleared_alerts = [AlertType.for_level(released_level) for released_level in released]
    if gain_cleared:
        cleared_alerts.append(AlertType.GAIN)

    return EvaluationResult(
        level=level,
        should_alert=alert_type is not None,
        percent_at_trigger=percent_at_trigger,
        alert_type=alert_type,
        loss_amount=loss_amount,
        loss_percent=loss_percent,
        gain_percent=gain_percent,
        risk_limit_percent=risk_limit_percent,
        latch=LatchState(alerted_level=alerted_level, gain_latched=gain_latched, last_level=level),
        loss_cleared=bool(released),
        gain_cleared=gain_cleared,
        cleared_alerts=cleared_alerts,
    )


class ThresholdEvaluator:
    """Session holder for per-user latch state around :func:`evaluate`."""

    def __init__(self, hysteresis_pct: Optional[float] = None, breakpoints: Optional[Mapping[RiskLevel, float]] = None):
        risk_cfg = config.section("risk")
        if hysteresis_pct is None:
            hysteresis_pct = float(risk_cfg.get("hysteresis_pct", DEFAULT_HYSTERESIS_PCT))
        self.hysteresis_pct = hysteresis_pct
        self.breakpoints = breakpoints or self._load_breakpoints(risk_cfg.get("level_breakpoints"))
        self._latches: Dict[str, LatchState] = {}

    @staticmethod
    def _load_breakpoints(raw) -> Mapping[RiskLevel, float]:
        if not raw:
            return DEFAULT_BREAKPOINTS
        loaded = dict(DEFAULT_BREAKPOINTS)
        for level in loaded:
            value = raw.get(level.label)
            if value is not None:
                loaded[level] = float(value)
        return loaded

    def latch_for(self, user_id: str) -> LatchState:
        return self._latches.get(user_id, LatchState())

    def evaluate(self, profile: RiskProfile, snapshot: AccountSnapshot) -> EvaluationResult:
        previous = self.latch_for(profile.user_id)
        result = evaluate(profile, snapshot, previous, self.hysteresis_pct, self.breakpoints)
        self._latches[profile.user_id] = result.latch
        if result.level != previous.last_level:
            logger.info(
                "Risk level for %s changed %s -> %s (loss=%.2f%%, limit=%.1f%%)",
                profile.user_id,
                previous.last_level.label,
                result.level.label,
                result.loss_percent,
                result.risk_limit_percent,
            )
        return result

    def reset(self, user_id: str) -> None:
        self._latches.pop(user_id, None)
