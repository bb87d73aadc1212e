# capture.py — microphone input handed to the engine/analysis as SampleFrames
import logging
import threading

import numpy as np

from audio_engine import CapabilityError
from note_detection import SampleFrame

logger = logging.getLogger(__name__)


class CapturePermissionError(CapabilityError):
    """Input device missing or access refused. No partial recording survives."""


def _sounddevice():
    try:
        import sounddevice as sd
    except OSError as e:  # PortAudio library missing
        raise CapturePermissionError(f"no audio backend: {e}") from e
    return sd


def record(seconds: float, sample_rate: int = 44100, device=None) -> SampleFrame:
    """Blocking mono recording from the default (or given) input device."""
    if seconds <= 0:
        raise ValueError(f"seconds must be positive, got {seconds}")
    sd = _sounddevice()
    try:
        data = sd.rec(int(round(seconds * sample_rate)), samplerate=sample_rate,
                      channels=1, dtype='float32', device=device)
        sd.wait()
    except sd.PortAudioError as e:
        raise CapturePermissionError(f"cannot record: {e}") from e
    return SampleFrame(data[:, 0], sample_rate)


class Recorder:
    """Start/stop recorder: collects input blocks until stop() returns them."""

    def __init__(self, sample_rate: int = 44100, device=None, stream_factory=None):
        self.sample_rate = int(sample_rate)
        self.device = device
        self._stream_factory = stream_factory
        self._chunks: list[np.ndarray] = []
        self._lock = threading.Lock()
        self.stream = None

    @property
    def recording(self) -> bool:
        return self.stream is not None

    def _cb(self, indata, frames, time, status):
        if status:
            logger.debug("input stream status: %s", status)
        with self._lock:
            self._chunks.append(np.array(indata[:, 0], dtype=np.float32, copy=True))

    def _open(self):
        if self._stream_factory is not None:
            return self._stream_factory(self.sample_rate, 1, self._cb)
        sd = _sounddevice()
        try:
            return sd.InputStream(samplerate=self.sample_rate, channels=1, dtype='float32',
                                  device=self.device, callback=self._cb)
        except sd.PortAudioError as e:
            raise CapturePermissionError(f"cannot open input stream: {e}") from e

    def start(self):
        if self.stream is not None:
            return
        with self._lock:
            self._chunks = []
        stream = self._open()
        try:
            stream.start()
        except Exception as e:
            stream.close()
            raise CapturePermissionError(f"cannot start input stream: {e}") from e
        self.stream = stream

    def stop(self) -> SampleFrame:
        if self.stream is None:
            raise RuntimeError("recorder is not running")
        stream, self.stream = self.stream, None
        try:
            stream.stop()
        finally:
            stream.close()
        with self._lock:
            chunks, self._chunks = self._chunks, []
        if chunks:
            samples = np.concatenate(chunks)
        else:
            samples = np.zeros(0, dtype=np.float32)
        return SampleFrame(samples, self.sample_rate)
