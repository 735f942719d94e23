import base64
import logging
from typing import Optional

import numpy as np

from alarm.tones import to_pcm16
from monitoring.event_bus import NotificationBus


logger = logging.getLogger(__name__)


class AudioSessionError(Exception):
    pass


class AudioSession:
    """Owned audio output. ``open`` before writing, ``close`` always."""

    def __init__(self, sample_rate: int):
        self.sample_rate = sample_rate
        self.is_open = False
        self.frames_written = 0

    async def open(self) -> None:
        self.is_open = True

    async def write(self, samples: np.ndarray) -> None:
        if not self.is_open:
            raise AudioSessionError("write on a closed audio session")
        await self._emit(samples)
        self.frames_written += len(samples)

    async def _emit(self, samples: np.ndarray) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        self.is_open = False

    async def __aenter__(self) -> "AudioSession":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


class NullAudioSession(AudioSession):
    async def _emit(self, samples: np.ndarray) -> None:
        return None


class BusAudioSession(AudioSession):
    """Streams PCM16 chunks to a user's dashboards over the notification bus."""

    def __init__(self, bus: NotificationBus, user_id: str, sample_rate: int):
        super().__init__(sample_rate)
        self.bus = bus
        self.user_id = user_id

    async def open(self) -> None:
        await super().open()
        self.bus.publish("alarm_audio_start", self.user_id, {"sample_rate": self.sample_rate, "encoding": "pcm_s16le"})

    async def _emit(self, samples: np.ndarray) -> None:
        self.bus.publish(
            "alarm_audio",
            self.user_id,
            {"pcm": base64.b64encode(to_pcm16(samples)).decode("ascii"), "frames": int(len(samples))},
        )

    async def close(self) -> None:
        if self.is_open:
            self.bus.publish("alarm_audio_stop", self.user_id, {"frames": self.frames_written})
        await super().close()


def create_audio_session(
    bus: Optional[NotificationBus],
    user_id: str,
    sample_rate: int,
    enabled: bool = True,
) -> AudioSession:
    if not enabled or bus is None:
        return NullAudioSession(sample_rate)
    return BusAudioSession(bus, user_id, sample_rate)
