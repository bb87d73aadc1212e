"""
Shared fixtures: synthetic tones and a fake output stream.

Nothing here touches audio hardware; the engine accepts a stream factory
and the fake one lets tests pull blocks through the callback by hand.
"""

import numpy as np
import pytest

from note_detection import SampleFrame

SR = 44100

# Fourth-octave roots of the C - F - G - C test progression
C4, F4, G4 = 261.63, 349.23, 392.00


def tone(freq: float, seconds: float, sr: int = SR, amp: float = 0.5) -> np.ndarray:
    t = np.arange(int(round(seconds * sr))) / sr
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def progression(freqs, seconds_each: float = 2.0, sr: int = SR) -> SampleFrame:
    return SampleFrame(np.concatenate([tone(f, seconds_each, sr) for f in freqs]), sr)


class FakeStream:
    """Stands in for sounddevice.OutputStream/InputStream."""

    def __init__(self, samplerate, channels, blocksize=None, callback=None, fail_start=False):
        self.samplerate = samplerate
        self.channels = channels
        self.blocksize = blocksize
        self.callback = callback
        self.fail_start = fail_start
        self.active = False
        self.closed = False

    def start(self):
        if self.fail_start:
            raise RuntimeError("device busy")
        self.active = True

    def stop(self):
        self.active = False

    def close(self):
        self.closed = True

    def pull(self, frames: int) -> np.ndarray:
        out = np.zeros((frames, self.channels), dtype=np.float32)
        self.callback(out, frames, None, None)
        return out


@pytest.fixture
def chord_track() -> SampleFrame:
    return progression([C4, F4, G4, C4])


@pytest.fixture
def stream_factory():
    """Factory that records every FakeStream it creates on `.streams`."""
    streams = []

    def factory(samplerate, channels, blocksize, callback):
        s = FakeStream(samplerate, channels, blocksize, callback)
        streams.append(s)
        return s

    factory.streams = streams
    return factory
