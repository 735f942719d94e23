import asyncio
import sys

import numpy as np

sys.path.insert(0, '.')

from alarm.audio import AudioSession, BusAudioSession
from alarm.player import AlarmPlayer, AlarmState
from alarm.tones import GENERATORS, render_cycle, siren_for
from monitoring.event_bus import NotificationBus
from risk.models import AlertType, SirenType


class RecordingSession(AudioSession):
    instances = []

    def __init__(self, sample_rate):
        super().__init__(sample_rate)
        self.chunks = []
        self.closed = False
        RecordingSession.instances.append(self)

    async def _emit(self, samples):
        self.chunks.append(samples)

    async def close(self):
        self.closed = True
        await super().close()


class BrokenSession(AudioSession):
    last = None

    def __init__(self, sample_rate):
        super().__init__(sample_rate)
        self.closed = False
        BrokenSession.last = self

    async def _emit(self, samples):
        raise RuntimeError("device unavailable")

    async def close(self):
        self.closed = True
        await super().close()


def _player(factory=RecordingSession, **kwargs):
    return AlarmPlayer(
        'u1',
        siren=SirenType.POLICE,
        session_factory=factory,
        sample_rate=8000,
        cycle_s=0.05,
        chunk_s=0.01,
        **kwargs,
    )


def test_trigger_plays_until_user_stop():
    async def _run():
        RecordingSession.instances.clear()
        player = _player()
        assert await player.trigger(AlertType.CRITICAL_LOSS)
        assert player.state is AlarmState.TRIGGERED
        assert await player.wait_until_playing(1.0)
        assert player.state is AlarmState.PLAYING

        session = RecordingSession.instances[-1]
        assert session.frames_written > 0

        stopped = await player.stop()
        assert stopped is AlertType.CRITICAL_LOSS
        assert player.state is AlarmState.IDLE
        assert session.closed
        states = [(t.from_state, t.to_state) for t in player.transitions]
        assert states == [('idle', 'triggered'), ('triggered', 'playing'), ('playing', 'idle')]

    asyncio.run(_run())


def test_higher_severity_interrupts_and_lower_is_coalesced():
    async def _run():
        player = _player()
        assert await player.trigger(AlertType.GAIN)
        assert await player.trigger(AlertType.CRITICAL_LOSS)
        assert player.alert_type is AlertType.CRITICAL_LOSS
        assert not await player.trigger(AlertType.CRITICAL_LOSS)
        assert not await player.trigger(AlertType.GAIN)
        assert player.alert_type is AlertType.CRITICAL_LOSS
        assert await player.trigger(AlertType.EMERGENCY)
        assert player.alert_type is AlertType.EMERGENCY
        await player.close()
        assert player.state is AlarmState.IDLE

    asyncio.run(_run())


def test_condition_cleared_matches_alert_type():
    async def _run():
        player = _player()
        await player.trigger(AlertType.CRITICAL_LOSS)
        assert not await player.condition_cleared(AlertType.GAIN)
        assert not await player.condition_cleared(AlertType.EMERGENCY)
        assert not await player.condition_cleared(AlertType.WARNING)
        assert player.is_active
        assert await player.condition_cleared(AlertType.CRITICAL_LOSS)
        assert player.state is AlarmState.IDLE
        assert player.transitions[-1].reason == 'condition_cleared'

    asyncio.run(_run())


def test_audio_failure_leaves_visual_alarm():
    async def _run():
        player = _player(factory=BrokenSession)
        assert await player.trigger(AlertType.CRITICAL_LOSS)
        for _ in range(50):
            if player.last_error:
                break
            await asyncio.sleep(0.01)
        assert player.last_error == 'device unavailable'
        assert player.state is AlarmState.TRIGGERED
        assert BrokenSession.last.closed
        await player.stop()
        assert player.state is AlarmState.IDLE

    asyncio.run(_run())


def test_transition_callback_sees_every_change():
    async def _run():
        seen = []
        player = _player(on_transition=lambda t: seen.append(t.to_state))
        await player.trigger(AlertType.EMERGENCY)
        await player.wait_until_playing(1.0)
        await player.stop()
        assert seen == ['triggered', 'playing', 'idle']

    asyncio.run(_run())


def test_bus_session_streams_pcm_chunks():
    async def _run():
        bus = NotificationBus()
        with bus.subscribe('u1') as sub:
            player = _player(factory=lambda rate: BusAudioSession(bus, 'u1', rate))
            await player.trigger(AlertType.GAIN)
            await player.wait_until_playing(1.0)
            await player.stop()
            types = []
            while True:
                event = await sub.get(timeout=0.05)
                if event is None:
                    break
                types.append(event.type)
        assert types[0] == 'alarm_audio_start'
        assert 'alarm_audio' in types
        assert types[-1] == 'alarm_audio_stop'

    asyncio.run(_run())


def test_tones_are_deterministic_and_bounded():
    for siren in GENERATORS:
        a = render_cycle(siren, volume=0.7, sample_rate=8000, cycle_s=0.5)
        b = render_cycle(siren, volume=0.7, sample_rate=8000, cycle_s=0.5)
        assert a.dtype == np.float32
        assert len(a) == 4000
        assert np.array_equal(a, b)
        assert float(np.max(np.abs(a))) <= 0.7 + 1e-6
        assert a[0] == 0.0


def test_gain_uses_coins_and_severity_volume():
    assert siren_for(AlertType.GAIN, SirenType.FIRE) == (SirenType.COINS, 0.5)
    assert siren_for(AlertType.CRITICAL_LOSS, SirenType.FIRE) == (SirenType.FIRE, 0.7)
    assert siren_for(AlertType.EMERGENCY, SirenType.AIR_RAID) == (SirenType.AIR_RAID, 0.8)
