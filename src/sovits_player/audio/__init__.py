from sovits_player.audio.player import StreamingAudioPlayer, sounddevice_stream_factory
from sovits_player.audio.wav_stream import (
    AudioFormat,
    DecoderState,
    PCMBuffer,
    WavStreamDecoder,
    parse_wav_header,
)

__all__ = [
    "AudioFormat",
    "DecoderState",
    "PCMBuffer",
    "StreamingAudioPlayer",
    "WavStreamDecoder",
    "parse_wav_header",
    "sounddevice_stream_factory",
]
