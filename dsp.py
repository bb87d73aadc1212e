"""
Processing stages for the playback signal graph.

Every stage works on mono float blocks and keeps its own state between
blocks, so the audio callback can feed it arbitrary block sizes. Continuous
parameters are SmoothedParam instances: setting one only moves its target,
and the stage glides towards it with an exponential approach.
"""

import math

import numpy as np
from scipy.signal import lfilter

RENDER_QUANTUM = 128      # minimum loop delay inside a feedback cycle, in frames
COEF_SUBBLOCK = 64        # filter coefficients are refreshed at this rate while gliding
COMPRESSOR_DIVISION = 32  # envelope detector update interval, in frames
_SETTLE_EPS = 1e-6


class SmoothedParam:
    """Scalar that approaches its target as target + (v0 - target) * exp(-t / tau)."""

    def __init__(self, value: float, sample_rate: int, time_constant: float = 0.01):
        self.value = float(value)
        self.target = float(value)
        self.sample_rate = int(sample_rate)
        self.time_constant = float(time_constant)

    def set_target(self, value: float) -> None:
        self.target = float(value)

    def set_immediate(self, value: float) -> None:
        self.value = self.target = float(value)

    @property
    def settled(self) -> bool:
        return abs(self.value - self.target) <= _SETTLE_EPS * max(1.0, abs(self.target))

    def next_block(self, n: int) -> np.ndarray:
        """Per-sample values for the next n frames; advances the parameter."""
        if n <= 0:
            return np.zeros(0, dtype=np.float64)
        if self.settled or self.time_constant <= 0:
            self.value = self.target
            return np.full(n, self.value, dtype=np.float64)
        k = np.arange(1, n + 1, dtype=np.float64)
        decay = np.exp(-k / (self.time_constant * self.sample_rate))
        out = self.target + (self.value - self.target) * decay
        self.value = float(out[-1])
        if self.settled:
            self.value = self.target
        return out

    def advance(self, n: int) -> float:
        """Advance n frames and return the value reached."""
        if n <= 0:
            return self.value
        if self.settled or self.time_constant <= 0:
            self.value = self.target
            return self.value
        decay = math.exp(-n / (self.time_constant * self.sample_rate))
        self.value = self.target + (self.value - self.target) * decay
        if self.settled:
            self.value = self.target
        return self.value


# --- Biquad filters (RBJ cookbook, with resonance/Q conventions of browser audio graphs) ---

def _lowpass(fs, freq, q_db, gain_db):
    nyq = fs / 2.0
    if freq >= nyq:
        return np.array([1.0, 0.0, 0.0]), np.array([1.0, 0.0, 0.0])
    w0 = 2.0 * math.pi * max(freq, 1e-3) / fs
    cw, sw = math.cos(w0), math.sin(w0)
    alpha = sw / (2.0 * 10.0 ** (q_db / 20.0))
    b = np.array([(1 - cw) / 2, 1 - cw, (1 - cw) / 2])
    a = np.array([1 + alpha, -2 * cw, 1 - alpha])
    return b / a[0], a / a[0]


def _lowshelf(fs, freq, q, gain_db):
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * min(max(freq, 1e-3), fs / 2.0 * 0.999) / fs
    cw, sw = math.cos(w0), math.sin(w0)
    alpha = sw / 2.0 * math.sqrt(2.0)  # shelf slope S = 1
    sa = 2.0 * math.sqrt(A) * alpha
    b = np.array([A * ((A + 1) - (A - 1) * cw + sa),
                  2 * A * ((A - 1) - (A + 1) * cw),
                  A * ((A + 1) - (A - 1) * cw - sa)])
    a = np.array([(A + 1) + (A - 1) * cw + sa,
                  -2 * ((A - 1) + (A + 1) * cw),
                  (A + 1) + (A - 1) * cw - sa])
    return b / a[0], a / a[0]


def _highshelf(fs, freq, q, gain_db):
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * min(max(freq, 1e-3), fs / 2.0 * 0.999) / fs
    cw, sw = math.cos(w0), math.sin(w0)
    alpha = sw / 2.0 * math.sqrt(2.0)
    sa = 2.0 * math.sqrt(A) * alpha
    b = np.array([A * ((A + 1) + (A - 1) * cw + sa),
                  -2 * A * ((A - 1) + (A + 1) * cw),
                  A * ((A + 1) + (A - 1) * cw - sa)])
    a = np.array([(A + 1) - (A - 1) * cw + sa,
                  2 * ((A - 1) - (A + 1) * cw),
                  (A + 1) - (A - 1) * cw - sa])
    return b / a[0], a / a[0]


def _peaking(fs, freq, q, gain_db):
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * min(max(freq, 1e-3), fs / 2.0 * 0.999) / fs
    cw, sw = math.cos(w0), math.sin(w0)
    alpha = sw / (2.0 * max(q, 1e-4))
    b = np.array([1 + alpha * A, -2 * cw, 1 - alpha * A])
    a = np.array([1 + alpha / A, -2 * cw, 1 - alpha / A])
    return b / a[0], a / a[0]


_DESIGNS = {
    "lowpass": _lowpass,
    "lowshelf": _lowshelf,
    "highshelf": _highshelf,
    "peaking": _peaking,
}


class Biquad:
    """Second-order IIR section with smoothed frequency, Q and gain."""

    def __init__(self, kind: str, sample_rate: int, frequency: float, q: float = 1.0,
                 gain_db: float = 0.0, time_constant: float = 0.01):
        if kind not in _DESIGNS:
            raise ValueError(f"unknown filter type {kind!r}")
        self.kind = kind
        self.sample_rate = int(sample_rate)
        self.frequency = SmoothedParam(frequency, sample_rate, time_constant)
        self.q = SmoothedParam(q, sample_rate, time_constant)
        self.gain = SmoothedParam(gain_db, sample_rate, time_constant)
        self._zi = np.zeros(2, dtype=np.float64)
        self._coefs = self._design()

    def _design(self):
        return _DESIGNS[self.kind](self.sample_rate, self.frequency.value,
                                   self.q.value, self.gain.value)

    def coefficients(self):
        return self._coefs

    def _gliding(self) -> bool:
        return not (self.frequency.settled and self.q.settled and self.gain.settled)

    def process(self, x: np.ndarray) -> np.ndarray:
        n = x.shape[0]
        if not self._gliding():
            self.frequency.advance(n)
            self.q.advance(n)
            self.gain.advance(n)
            self._coefs = self._design()
            b, a = self._coefs
            y, self._zi = lfilter(b, a, x, zi=self._zi)
            return y
        out = np.empty(n, dtype=np.float64)
        for start in range(0, n, COEF_SUBBLOCK):
            stop = min(n, start + COEF_SUBBLOCK)
            m = stop - start
            self.frequency.advance(m)
            self.q.advance(m)
            self.gain.advance(m)
            self._coefs = self._design()
            b, a = self._coefs
            out[start:stop], self._zi = lfilter(b, a, x[start:stop], zi=self._zi)
        return out

    def reset(self) -> None:
        self._zi[:] = 0.0

    def frequency_response(self, freqs) -> np.ndarray:
        """Magnitude response at the given frequencies (Hz) for the current coefficients."""
        b, a = self._coefs
        w = 2.0 * np.pi * np.asarray(freqs, dtype=float) / self.sample_rate
        z = np.exp(-1j * w)
        h = (b[0] + b[1] * z + b[2] * z * z) / (a[0] + a[1] * z + a[2] * z * z)
        return np.abs(h)


# --- Waveshaper ---

def make_distortion_curve(amount: float, n_samples: int = 44100) -> np.ndarray:
    """Transfer curve (3 + k) * x * 20deg / (pi + k * |x|) sampled over x in [-1, 1]."""
    k = float(amount)
    deg = math.pi / 180.0
    x = np.linspace(-1.0, 1.0, n_samples)
    return (3.0 + k) * x * 20.0 * deg / (math.pi + k * np.abs(x))


class WaveShaper:
    def __init__(self, amount: float = 0.0, n_samples: int = 44100):
        self.n_samples = int(n_samples)
        self._xs = np.linspace(-1.0, 1.0, self.n_samples)
        self.set_amount(amount)

    def set_amount(self, amount: float) -> None:
        # whole curve replaced at once, no crossfade between curves
        self.amount = float(amount)
        self.curve = make_distortion_curve(self.amount, self.n_samples)

    def process(self, x: np.ndarray) -> np.ndarray:
        # np.interp holds the end values for inputs outside [-1, 1]
        return np.interp(x, self._xs, self.curve)


# --- Delay lines ---

class DelayLine:
    """Ring buffer read at a per-sample (fractional) delay."""

    def __init__(self, max_seconds: float, sample_rate: int, headroom: int = 8192):
        self.sample_rate = int(sample_rate)
        self.max_samples = int(math.ceil(max_seconds * sample_rate))
        self._buf = np.zeros(self.max_samples + headroom + 2, dtype=np.float64)
        self._w = 0

    @property
    def capacity(self) -> int:
        return self._buf.shape[0]

    def _read(self, pos: np.ndarray) -> np.ndarray:
        L = self._buf.shape[0]
        i0 = np.floor(pos)
        frac = pos - i0
        i0 = i0.astype(np.int64)
        return self._buf[i0 % L] * (1.0 - frac) + self._buf[(i0 + 1) % L] * frac

    def _write(self, x: np.ndarray) -> None:
        L = self._buf.shape[0]
        idx = (self._w + np.arange(x.shape[0])) % L
        self._buf[idx] = x
        self._w = (self._w + x.shape[0]) % L

    def process(self, x: np.ndarray, delay_samples) -> np.ndarray:
        n = x.shape[0]
        if n > self.capacity - self.max_samples - 2:
            # block longer than the headroom: split it
            half = n // 2
            d = np.broadcast_to(np.asarray(delay_samples, dtype=np.float64), (n,))
            return np.concatenate([self.process(x[:half], d[:half]),
                                   self.process(x[half:], d[half:])])
        d = np.clip(np.broadcast_to(np.asarray(delay_samples, dtype=np.float64), (n,)),
                    0.0, float(self.max_samples))
        start = self._w
        self._write(x)
        pos = start + np.arange(n, dtype=np.float64) - d
        return self._read(pos)

    def clear(self) -> None:
        self._buf[:] = 0.0


class FeedbackDelay(DelayLine):
    """Delay whose output is fed back into its own input through a gain.

    Returns only the delayed (wet) signal; the caller mixes it with the dry path.
    Inside the loop the delay never drops below one render quantum.
    """

    def __init__(self, max_seconds: float, sample_rate: int, time_constant: float = 0.01):
        super().__init__(max_seconds, sample_rate)
        self.delay_time = SmoothedParam(0.0, sample_rate, time_constant)
        self.feedback = SmoothedParam(0.0, sample_rate, time_constant)

    def process(self, x: np.ndarray, delay_samples=None) -> np.ndarray:
        n = x.shape[0]
        delay = self.delay_time.next_block(n) * self.sample_rate
        delay = np.clip(delay, RENDER_QUANTUM, self.max_samples)
        fb = self.feedback.next_block(n)
        out = np.empty(n, dtype=np.float64)
        for start in range(0, n, RENDER_QUANTUM):
            stop = min(n, start + RENDER_QUANTUM)
            m = stop - start
            pos = self._w + np.arange(m, dtype=np.float64) - delay[start]
            y = self._read(pos)
            out[start:stop] = y
            self._write(x[start:stop] + fb[start:stop] * y)
        return out


# --- Pitch shifter ---

PITCH_WINDOW = 0.05  # seconds swept by each modulated delay tap


def pitch_shift_settings(semitones: float) -> tuple[float, float, float]:
    """(ratio, modulator frequency in Hz, modulator depth in seconds) for a shift."""
    ratio = 2.0 ** (semitones / 12.0)
    if semitones == 0:
        return ratio, 0.0, 0.0
    freq = abs((1.0 - ratio) / PITCH_WINDOW)
    return ratio, freq, PITCH_WINDOW * 0.5


class PitchShifter:
    """Two delay taps swept by half-cycle-offset sawtooths and crossfaded.

    A tap sweeping its delay at rate (1 - ratio) resamples the signal by
    `ratio`; the second tap covers the jump of the first one.
    """

    def __init__(self, sample_rate: int, time_constant: float = 0.01):
        self.sample_rate = int(sample_rate)
        self.lines = (DelayLine(1.0, sample_rate), DelayLine(1.0, sample_rate))
        self.mod_frequency = SmoothedParam(0.0, sample_rate, time_constant)
        self.mod_depth = SmoothedParam(0.0, sample_rate, time_constant)
        self.semitones = 0.0
        self.ratio = 1.0
        self._phase = 0.0

    def set_semitones(self, semitones: float) -> None:
        self.semitones = float(semitones)
        ratio, freq, depth = pitch_shift_settings(self.semitones)
        self.ratio = ratio
        if depth > 0:
            self.mod_frequency.set_target(freq)
        self.mod_depth.set_target(depth)

    def process(self, x: np.ndarray) -> np.ndarray:
        n = x.shape[0]
        freq = self.mod_frequency.next_block(n)
        depth = self.mod_depth.next_block(n)
        phase1 = (self._phase + np.cumsum(freq) / self.sample_rate) % 1.0
        self._phase = float(phase1[-1]) if n else self._phase
        phase2 = (phase1 + 0.5) % 1.0
        out = np.zeros(n, dtype=np.float64)
        for line, ph in zip(self.lines, (phase1, phase2)):
            if self.ratio > 1.0:
                saw = 1.0 - 2.0 * ph    # shrinking delay raises pitch
            else:
                saw = 2.0 * ph - 1.0
            delay = depth * (1.0 + saw) * self.sample_rate
            fade = 1.0 - np.abs(2.0 * ph - 1.0)
            out += line.process(x, delay) * fade
        return out

    def clear(self) -> None:
        for line in self.lines:
            line.clear()


# --- Amplitude stages ---

class Gain:
    def __init__(self, value: float, sample_rate: int, time_constant: float = 0.01):
        self.gain = SmoothedParam(value, sample_rate, time_constant)

    def process(self, x: np.ndarray) -> np.ndarray:
        return x * self.gain.next_block(x.shape[0])


class Tremolo:
    """Sine LFO at `rate` Hz scaled by `depth`, added to a baseline gain of 1."""

    def __init__(self, sample_rate: int, rate: float = 4.0, depth: float = 0.0,
                 time_constant: float = 0.01):
        self.sample_rate = int(sample_rate)
        self.baseline = SmoothedParam(1.0, sample_rate, time_constant)
        self.rate = SmoothedParam(rate, sample_rate, time_constant)
        self.depth = SmoothedParam(depth, sample_rate, time_constant)
        self._phase = 0.0

    def process(self, x: np.ndarray) -> np.ndarray:
        n = x.shape[0]
        rate = self.rate.next_block(n)
        phase = self._phase + 2.0 * np.pi * np.cumsum(rate) / self.sample_rate
        if n:
            self._phase = float(phase[-1] % (2.0 * np.pi))
        lfo = np.sin(phase - 2.0 * np.pi * rate / self.sample_rate)
        g = self.baseline.next_block(n) + self.depth.next_block(n) * lfo
        return x * g


class Compressor:
    """Feed-forward soft-knee compressor.

    Gain reduction is computed per division of COMPRESSOR_DIVISION frames from
    the division's peak, smoothed with separate attack/release time constants
    and interpolated linearly across the division.
    """

    def __init__(self, sample_rate: int, threshold: float = -24.0, knee: float = 30.0,
                 ratio: float = 12.0, attack: float = 0.003, release: float = 0.25,
                 time_constant: float = 0.01):
        self.sample_rate = int(sample_rate)
        self.threshold = float(threshold)
        self.knee = float(knee)
        self.ratio = float(ratio)
        self.attack = float(attack)
        self.release = SmoothedParam(release, sample_rate, time_constant)
        self._env_db = 0.0  # current gain reduction, <= 0

    @property
    def reduction_db(self) -> float:
        return self._env_db

    def static_gain_db(self, level_db):
        """Gain change (dB, <= 0) the static curve asks for at an input level."""
        level_db = np.asarray(level_db, dtype=float)
        over = level_db - self.threshold
        slope = 1.0 / self.ratio - 1.0
        half = self.knee / 2.0
        g = np.where(over <= -half, 0.0, slope * over)
        if self.knee > 0:
            in_knee = (over > -half) & (over < half)
            g = np.where(in_knee, slope * (over + half) ** 2 / (2.0 * self.knee), g)
        return g

    def process(self, x: np.ndarray) -> np.ndarray:
        n = x.shape[0]
        out = np.empty(n, dtype=np.float64)
        div_dur = COMPRESSOR_DIVISION / self.sample_rate
        for start in range(0, n, COMPRESSOR_DIVISION):
            stop = min(n, start + COMPRESSOR_DIVISION)
            seg = x[start:stop]
            release = max(self.release.advance(stop - start), 1e-4)
            peak = float(np.max(np.abs(seg))) if seg.size else 0.0
            level = 20.0 * math.log10(peak) if peak > 1e-9 else -180.0
            target = float(self.static_gain_db(level))
            tau = self.attack if target < self._env_db else release
            coef = math.exp(-div_dur / max(tau, 1e-4))
            prev = self._env_db
            self._env_db = target + (prev - target) * coef
            ramp = np.linspace(prev, self._env_db, stop - start + 1)[1:]
            out[start:stop] = seg * 10.0 ** (ramp / 20.0)
        return out

    def reset(self) -> None:
        self._env_db = 0.0
