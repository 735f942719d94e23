"""Parametric siren synthesis.

Every siren is a deterministic function of elapsed time inside one cycle;
the player loops the rendered cycle until stopped.
"""
from typing import Callable, Dict, Tuple

import numpy as np

from risk.models import AlertType, SirenType


DEFAULT_SAMPLE_RATE = 8000
DEFAULT_CYCLE_S = 3.0
EDGE_FADE_S = 0.01

ALERT_VOLUMES: Dict[AlertType, float] = {
    AlertType.GAIN: 0.5,
    AlertType.WARNING: 0.5,
    AlertType.DANGER: 0.6,
    AlertType.CRITICAL_LOSS: 0.7,
    AlertType.EMERGENCY: 0.8,
}

COIN_FREQUENCIES = (800.0, 1000.0, 1200.0, 900.0, 1100.0, 950.0)


def volume_for(alert_type: AlertType) -> float:
    return ALERT_VOLUMES.get(alert_type, 0.5)


def _sine(freq: np.ndarray, sample_rate: int) -> np.ndarray:
    # Integrate instantaneous frequency so sweeps stay phase-continuous
    phase = 2 * np.pi * np.cumsum(freq) / sample_rate
    return np.sin(phase)


def _triangle_between(t: np.ndarray, low: float, high: float, half_period: float) -> np.ndarray:
    pos = (t / half_period) % 2.0
    ramp = np.where(pos < 1.0, pos, 2.0 - pos)
    return low + (high - low) * ramp


def _police(t: np.ndarray, sample_rate: int, cycle_s: float) -> np.ndarray:
    step = (np.floor(t / 0.25) % 2).astype(bool)
    f1 = np.where(step, 1000.0, 800.0)
    f2 = np.where(step, 900.0, 1200.0)
    return 0.5 * (_sine(f1, sample_rate) + _sine(f2, sample_rate))


def _ambulance(t: np.ndarray, sample_rate: int, cycle_s: float) -> np.ndarray:
    return _sine(_triangle_between(t, 500.0, 700.0, 0.25), sample_rate)


def _fire(t: np.ndarray, sample_rate: int, cycle_s: float) -> np.ndarray:
    freq = _triangle_between(t, 450.0, 600.0, 0.125)
    phase = np.cumsum(freq) / sample_rate
    return 2.0 * (phase - np.floor(phase + 0.5))


def _air_raid(t: np.ndarray, sample_rate: int, cycle_s: float) -> np.ndarray:
    half = cycle_s / 2
    pos = np.where(t < half, t / half, (cycle_s - t) / half)
    freq = 200.0 * np.power(4.0, np.clip(pos, 0.0, 1.0))
    return _sine(freq, sample_rate)


def _alarm_clock(t: np.ndarray, sample_rate: int, cycle_s: float) -> np.ndarray:
    gate = (np.floor(t / 0.25) % 2 == 0).astype(np.float64)
    square = np.sign(np.sin(2 * np.pi * 1000.0 * t))
    return gate * square


def _coins(t: np.ndarray, sample_rate: int, cycle_s: float) -> np.ndarray:
    out = np.zeros_like(t)
    for index, freq in enumerate(COIN_FREQUENCIES):
        start = index * 0.15
        local = t - start
        active = (local >= 0) & (local < 0.3)
        envelope = np.where(active, np.exp(-local.clip(min=0) * 15.0), 0.0)
        out += envelope * np.sin(2 * np.pi * freq * local)
    peak = np.max(np.abs(out))
    return out / peak if peak > 0 else out


GENERATORS: Dict[SirenType, Callable[[np.ndarray, int, float], np.ndarray]] = {
    SirenType.POLICE: _police,
    SirenType.AMBULANCE: _ambulance,
    SirenType.FIRE: _fire,
    SirenType.AIR_RAID: _air_raid,
    SirenType.ALARM_CLOCK: _alarm_clock,
    SirenType.COINS: _coins,
}


def render_cycle(
    siren: SirenType,
    volume: float = 0.5,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    cycle_s: float = DEFAULT_CYCLE_S,
) -> np.ndarray:
    """Render one cycle as float32 PCM in [-volume, volume]."""
    n = int(round(sample_rate * cycle_s))
    if n <= 0:
        raise ValueError("cycle must contain at least one sample")
    t = np.arange(n, dtype=np.float64) / sample_rate
    wave = GENERATORS[siren](t, sample_rate, cycle_s)
    fade = min(int(sample_rate * EDGE_FADE_S), n // 2)
    if fade > 0:
        ramp = np.linspace(0.0, 1.0, fade)
        wave[:fade] *= ramp
        wave[-fade:] *= ramp[::-1]
    return (np.clip(wave, -1.0, 1.0) * volume).astype(np.float32)


def to_pcm16(samples: np.ndarray) -> bytes:
    return (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes()


def siren_for(alert_type: AlertType, configured: SirenType) -> Tuple[SirenType, float]:
    """Gain alerts use the coin sound; losses use the user's siren."""
    if alert_type is AlertType.GAIN:
        return SirenType.COINS, volume_for(alert_type)
    return configured, volume_for(alert_type)
