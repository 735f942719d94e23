import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from alarm.audio import AudioSession, NullAudioSession
from alarm.tones import DEFAULT_CYCLE_S, DEFAULT_SAMPLE_RATE, render_cycle, siren_for
from risk.models import AlertType, SirenType


logger = logging.getLogger(__name__)

MAX_TRANSITIONS = 100


class AlarmState(Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    PLAYING = "playing"


@dataclass
class AlarmTransition:
    from_state: str
    to_state: str
    alert_type: Optional[str]
    reason: str
    ts: float = field(default_factory=time.time)


SessionFactory = Callable[[int], AudioSession]


class AlarmPlayer:
    """One looping alarm per user session.

    idle -> triggered on a breach, triggered -> playing once the first tone
    cycle reached the audio session, back to idle on user stop or when the
    condition clears. A higher-severity trigger interrupts the current alarm;
    anything else is coalesced. Audio failures leave the alarm triggered.
    """

    def __init__(
        self,
        user_id: str,
        siren: SirenType = SirenType.POLICE,
        session_factory: Optional[SessionFactory] = None,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        cycle_s: float = DEFAULT_CYCLE_S,
        chunk_s: float = 0.5,
        on_transition: Optional[Callable[[AlarmTransition], None]] = None,
    ):
        self.user_id = user_id
        self.siren = siren
        self.session_factory = session_factory or NullAudioSession
        self.sample_rate = sample_rate
        self.cycle_s = cycle_s
        self.chunk_s = chunk_s
        self.on_transition = on_transition

        self.state = AlarmState.IDLE
        self.alert_type: Optional[AlertType] = None
        self.started_at: Optional[float] = None
        self.cycles_played = 0
        self.last_error: Optional[str] = None
        self.transitions: List[AlarmTransition] = []

        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._playing = asyncio.Event()
        self._cycle_cache: Dict[Tuple[SirenType, float], np.ndarray] = {}

    @property
    def is_active(self) -> bool:
        return self.state is not AlarmState.IDLE

    def _transition(self, to_state: AlarmState, reason: str) -> None:
        if to_state is self.state:
            return
        transition = AlarmTransition(
            from_state=self.state.value,
            to_state=to_state.value,
            alert_type=self.alert_type.value if self.alert_type else None,
            reason=reason,
        )
        self.state = to_state
        self.transitions.append(transition)
        if len(self.transitions) > MAX_TRANSITIONS:
            del self.transitions[: len(self.transitions) - MAX_TRANSITIONS]
        logger.info(
            "Alarm %s: %s -> %s (%s, %s)",
            self.user_id,
            transition.from_state,
            transition.to_state,
            transition.alert_type,
            reason,
        )
        if self.on_transition is not None:
            try:
                self.on_transition(transition)
            except Exception as exc:
                logger.error("Alarm transition callback failed: %s", exc)

    def _outranks(self, incoming: AlertType) -> bool:
        current = self.alert_type
        if current is None:
            return True
        if incoming is AlertType.EMERGENCY and current is not AlertType.EMERGENCY:
            return True
        return incoming.severity > current.severity

    async def trigger(self, alert_type: AlertType, siren: Optional[SirenType] = None) -> bool:
        """Start (or escalate to) an alarm. Returns False when coalesced."""
        async with self._lock:
            if siren is not None:
                self.siren = siren
            if self.state is not AlarmState.IDLE:
                if not self._outranks(alert_type):
                    logger.info(
                        "Alarm %s: %s coalesced into active %s",
                        self.user_id,
                        alert_type.value,
                        self.alert_type.value if self.alert_type else None,
                    )
                    return False
                await self._cancel_task()
                self._transition(AlarmState.IDLE, f"interrupted_by_{alert_type.value}")

            self.alert_type = alert_type
            self.started_at = time.time()
            self.cycles_played = 0
            self.last_error = None
            self._playing.clear()
            self._transition(AlarmState.TRIGGERED, "breach")
            self._task = asyncio.create_task(self._run(alert_type, self.siren))
            return True

    async def stop(self, reason: str = "user_stop") -> Optional[AlertType]:
        """Silence immediately and return the alert type that was active."""
        async with self._lock:
            return await self._stop_locked(reason)

    async def _stop_locked(self, reason: str) -> Optional[AlertType]:
        stopped = self.alert_type
        await self._cancel_task()
        self._transition(AlarmState.IDLE, reason)
        self.alert_type = None
        self.started_at = None
        self._playing.clear()
        return stopped

    async def condition_cleared(self, alert_type: AlertType) -> bool:
        """Auto-silence when the condition behind the playing alert has recovered."""
        async with self._lock:
            if self.alert_type is None or self.alert_type is not alert_type:
                return False
            await self._stop_locked("condition_cleared")
            return True

    async def close(self) -> None:
        await self.stop("closed")

    async def wait_until_playing(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._playing.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _cycle(self, alert_type: AlertType, siren: SirenType) -> np.ndarray:
        tone, volume = siren_for(alert_type, siren)
        key = (tone, volume)
        cached = self._cycle_cache.get(key)
        if cached is None:
            cached = render_cycle(tone, volume=volume, sample_rate=self.sample_rate, cycle_s=self.cycle_s)
            self._cycle_cache[key] = cached
        return cached

    async def _run(self, alert_type: AlertType, siren: SirenType) -> None:
        session: Optional[AudioSession] = None
        try:
            samples = self._cycle(alert_type, siren)
            chunk = max(1, int(self.sample_rate * self.chunk_s))
            session = self.session_factory(self.sample_rate)
            await session.open()
            while True:
                for start in range(0, len(samples), chunk):
                    await session.write(samples[start:start + chunk])
                    if self.state is AlarmState.TRIGGERED:
                        self._transition(AlarmState.PLAYING, "audio_ready")
                        self._playing.set()
                    await asyncio.sleep(self.chunk_s)
                self.cycles_played += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Visual alarm only from here on
            self.last_error = str(exc)
            logger.error("Alarm audio for %s failed: %s", self.user_id, exc)
            self._playing.clear()
            self._transition(AlarmState.TRIGGERED, "audio_failed")
        finally:
            if session is not None:
                try:
                    await session.close()
                except Exception as exc:
                    logger.warning("Closing audio session for %s failed: %s", self.user_id, exc)

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "alert_type": self.alert_type.value if self.alert_type else None,
            "siren": self.siren.value,
            "started_at": self.started_at,
            "cycles_played": self.cycles_played,
            "last_error": self.last_error,
            "transitions": [t.__dict__ for t in self.transitions[-10:]],
        }
