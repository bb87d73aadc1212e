"""
Pitch detection on short mono windows using time-domain autocorrelation.
"""

from dataclasses import dataclass
import math

import numpy as np

NO_PITCH = -1.0  # sentinel: silence or no discernible periodicity

SILENCE_RMS = 0.01
TRIM_THRESHOLD = 0.2


@dataclass(frozen=True)
class SampleFrame:
    """Mono samples plus the rate they were captured at. The array is read-only."""

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        arr = np.array(self.samples, dtype=np.float32, copy=True).reshape(-1)
        arr.setflags(write=False)
        object.__setattr__(self, "samples", arr)
        object.__setattr__(self, "sample_rate", int(self.sample_rate))

    def __len__(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return len(self) / float(self.sample_rate)


@dataclass(frozen=True)
class PitchEstimate:
    time: float        # seconds into the source track
    frequency: float   # Hz, or NO_PITCH

    @property
    def voiced(self) -> bool:
        return self.frequency > 0

    @property
    def pitch_class(self) -> int | None:
        return pitch_class(self.frequency) if self.voiced else None


def midi_from_frequency(frequency: float) -> int:
    """Nearest MIDI note number (A4 = 440 Hz = 69)."""
    return int(round(12.0 * math.log2(frequency / 440.0))) + 69


def pitch_class(frequency: float) -> int:
    # Python's % already normalizes negatives into [0, 11]
    return midi_from_frequency(frequency) % 12


def _trim_bounds(buf: np.ndarray) -> tuple[int, int]:
    """Indices of the first/last near-zero samples within each half of the window."""
    size = buf.shape[0]
    quiet = np.abs(buf) < TRIM_THRESHOLD

    r1 = 0
    head = np.flatnonzero(quiet[: (size + 1) // 2])
    if head.size:
        r1 = int(head[0])

    r2 = size - 1
    n_tail = (size + 1) // 2 - 1
    if n_tail > 0:
        # tail[k] is buf[size - 1 - k]
        tail = np.flatnonzero(quiet[::-1][:n_tail])
        if tail.size:
            r2 = size - 1 - int(tail[0])
    return r1, r2


def autocorrelation(x: np.ndarray) -> np.ndarray:
    """c[i] = sum_j x[j] * x[j + i] for i in [0, len(x)), computed directly."""
    n = x.shape[0]
    if n == 0:
        return np.zeros(0, dtype=np.float64)
    return np.correlate(x, x, mode="full")[n - 1:]


def detect_pitch(window, sample_rate: int) -> float:
    """Estimate the fundamental frequency of a window in Hz.

    Returns NO_PITCH when the window is below the RMS silence gate or no
    usable autocorrelation peak exists.
    """
    buf = np.asarray(window, dtype=np.float64).reshape(-1)
    if buf.size == 0:
        return NO_PITCH

    rms = math.sqrt(float(np.mean(buf * buf)))
    if rms < SILENCE_RMS:
        return NO_PITCH

    r1, r2 = _trim_bounds(buf)
    sliced = buf[r1:r2]
    n = sliced.shape[0]
    if n < 3:
        return NO_PITCH

    c = autocorrelation(sliced)

    # walk down the initial lobe to its first local minimum
    d = 0
    while d < n - 1 and c[d] > c[d + 1]:
        d += 1
    maxpos = d + int(np.argmax(c[d:]))

    lag = float(maxpos)
    # parabolic refinement needs both neighbours inside the buffer
    if 0 < maxpos < n - 1:
        x1, x2, x3 = c[maxpos - 1], c[maxpos], c[maxpos + 1]
        a = (x1 + x3 - 2.0 * x2) / 2.0
        b = (x3 - x1) / 2.0
        if a != 0:
            lag = maxpos - b / (2.0 * a)

    if not np.isfinite(lag) or lag <= 0:
        return NO_PITCH
    return float(sample_rate) / lag


def detect_frame(frame: SampleFrame) -> float:
    return detect_pitch(frame.samples, frame.sample_rate)
