"""Tests for the callback-driven streaming audio player."""

import numpy as np
import pytest

from sovits_player.audio.base import AudioSink
from sovits_player.audio.player import StreamingAudioPlayer
from sovits_player.audio.wav_stream import AudioFormat, PCMBuffer
from sovits_player.errors import PlaybackFailed


class FakeOutputStream:
    """Stands in for a PortAudio stream; tests pull frames by hand."""

    def __init__(self, fmt: AudioFormat, callback) -> None:
        self.fmt = fmt
        self.callback = callback
        self.active = False
        self.closed = False
        self.aborted = False
        self.stopped = False
        self.starts = 0

    def start(self) -> None:
        self.active = True
        self.starts += 1

    def stop(self) -> None:
        self.active = False
        self.stopped = True

    def abort(self) -> None:
        self.active = False
        self.aborted = True

    def close(self) -> None:
        self.closed = True

    def pull(self, frames: int) -> np.ndarray:
        out = np.full((frames, self.fmt.channels), 9.0, dtype=np.float32)
        self.callback(out, frames, None, None)
        return out


class FakeDevice:
    def __init__(self) -> None:
        self.streams: list[FakeOutputStream] = []

    def __call__(self, fmt, callback) -> FakeOutputStream:
        stream = FakeOutputStream(fmt, callback)
        self.streams.append(stream)
        return stream

    @property
    def current(self) -> FakeOutputStream:
        return self.streams[-1]


def block(value: float, frames: int = 4, channels: int = 1, seq: int = 0) -> PCMBuffer:
    return PCMBuffer(np.full((frames, channels), value, dtype=np.float32), seq)


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def player(device: FakeDevice):
    p = StreamingAudioPlayer(device)
    p.configure(AudioFormat(44100, 1))
    return p


class TestScheduling:
    """Buffers play back-to-back in arrival order."""

    def test_satisfies_sink_protocol(self, player: StreamingAudioPlayer):
        assert isinstance(player, AudioSink)

    def test_fifo_order_across_callbacks(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        for i in range(3):
            player.enqueue(block(0.1 * (i + 1)))
        assert player.is_playing()

        out = device.current.pull(6)
        np.testing.assert_allclose(out[:, 0], [0.1] * 4 + [0.2] * 2)
        out = device.current.pull(6)
        np.testing.assert_allclose(out[:, 0], [0.2] * 2 + [0.3] * 4)
        assert player.buffers_played == 3
        assert player.frames_played == 12

    def test_underrun_writes_silence(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        player.enqueue(block(0.5))
        out = device.current.pull(8)
        np.testing.assert_allclose(out[:, 0], [0.5] * 4 + [0.0] * 4)

    def test_enqueue_before_configure_fails(self, device: FakeDevice):
        player = StreamingAudioPlayer(device)
        with pytest.raises(PlaybackFailed):
            player.enqueue(block(0.1))

    def test_channel_mismatch_fails(self, player: StreamingAudioPlayer):
        with pytest.raises(PlaybackFailed):
            player.enqueue(block(0.1, channels=2))

    def test_factory_error_is_playback_failure(self):
        def broken(fmt, callback):
            raise OSError("no default output device")

        player = StreamingAudioPlayer(broken)
        with pytest.raises(PlaybackFailed) as info:
            player.configure(AudioFormat(22050))
        assert "no default output device" in info.value.message

    def test_reconfigure_keeps_queue(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        player.pause()
        player.enqueue(block(0.7))
        old = device.current

        player.configure(AudioFormat(32000, 1))

        assert old.closed
        assert device.current is not old
        assert player.pending_buffers == 1
        player.resume()
        np.testing.assert_allclose(device.current.pull(4)[:, 0], [0.7] * 4)

    def test_same_format_reuses_stream(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        player.configure(AudioFormat(44100, 1))
        assert len(device.streams) == 1


class TestControl:
    def test_pause_outputs_silence_and_keeps_position(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        player.enqueue(block(0.4, frames=8))
        device.current.pull(2)

        player.pause()
        assert player.is_paused
        assert not player.is_playing()
        assert not device.current.pull(4).any()

        player.resume()
        np.testing.assert_allclose(device.current.pull(6)[:, 0], [0.4] * 6)

    def test_resume_when_not_paused_is_noop(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        player.enqueue(block(0.1))
        starts = device.current.starts
        player.resume()
        assert device.current.starts == starts

    def test_stop_drops_everything(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        stream = device.current
        player.enqueue(block(0.3))
        player.enqueue(block(0.3))

        player.stop()

        assert stream.closed
        assert player.pending_buffers == 0
        assert player.audio_format is None
        assert not player.is_playing()
        with pytest.raises(PlaybackFailed):
            player.enqueue(block(0.3))


class TestDrain:
    async def test_drained_after_last_buffer_played(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        player.enqueue(block(0.2))
        player.mark_end_of_stream()
        assert not await player.wait_drained(0.01)

        device.current.pull(4)
        assert await player.wait_drained(1.0)

    async def test_drained_immediately_when_queue_empty(
        self, player: StreamingAudioPlayer
    ):
        player.mark_end_of_stream()
        assert await player.wait_drained(0.1)

    async def test_stop_releases_waiters(
        self, player: StreamingAudioPlayer
    ):
        player.enqueue(block(0.2))
        player.stop()
        assert await player.wait_drained(0.1)

    def test_stop_aborts_instead_of_waiting(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        stream = device.current
        player.enqueue(block(0.3))

        player.stop()

        assert stream.aborted
        assert not stream.stopped
        assert stream.closed

    def test_finish_lets_the_device_play_out(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        stream = device.current
        player.enqueue(block(0.3))
        device.current.pull(4)
        player.mark_end_of_stream()

        player.finish()

        assert stream.stopped
        assert not stream.aborted
        assert stream.closed
        assert player.audio_format is None
        assert player.pending_buffers == 0


class TestPosition:
    def test_advances_with_the_device(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        assert player.playback_position() == 0
        player.enqueue(block(0.1, frames=8))
        device.current.pull(3)
        assert player.playback_position() == 3
        device.current.pull(8)
        assert player.playback_position() == 8

    def test_stalls_while_paused(
        self, player: StreamingAudioPlayer, device: FakeDevice
    ):
        player.enqueue(block(0.1, frames=8))
        device.current.pull(2)
        player.pause()
        device.current.pull(4)
        assert player.playback_position() == 2
