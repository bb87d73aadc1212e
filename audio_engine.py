# audio_engine.py — effects graph + transport over a sounddevice output stream
from dataclasses import dataclass
from enum import Enum
import logging
import math
import os
import shutil
import subprocess
import tempfile
import threading
import warnings

import numpy as np
import soundfile as sf
from scipy.signal import resample_poly

from dsp import Biquad, Compressor, FeedbackDelay, Gain, PitchShifter, Tremolo, WaveShaper
from note_detection import SampleFrame
from spectrum import SpectrumTap
from utils import EngineSettings

logger = logging.getLogger(__name__)


class AudioEngineError(RuntimeError):
    pass


class CapabilityError(AudioEngineError):
    """A host capability (decoder, output device, microphone) is unavailable."""


class DecodeError(CapabilityError):
    pass


class AudioOutputUnavailableError(CapabilityError):
    pass


class InvalidTransitionError(AudioEngineError):
    pass


# --- Per-file decode serialization to avoid concurrent opens of the same file ---
_DECODE_LOCKS: dict[str, threading.Lock] = {}
_DECODE_LOCKS_GUARD = threading.Lock()

def _decode_lock_for(path: str) -> threading.Lock:
    key = str(path)
    with _DECODE_LOCKS_GUARD:
        lk = _DECODE_LOCKS.get(key)
        if lk is None:
            lk = threading.Lock()
            _DECODE_LOCKS[key] = lk
        return lk


_COMPRESSED_EXTS = {'.mp3', '.m4a', '.aac', '.ogg', '.opus', '.webm'}


def _decode_via_ffmpeg(path: str):
    """Decode any format via ffmpeg → temp WAV (mono), then read with soundfile."""
    ffmpeg = shutil.which("ffmpeg")
    if not ffmpeg:
        raise RuntimeError("ffmpeg not found on PATH")
    with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as tmp:
        tmp_path = tmp.name
    cmd = [ffmpeg, "-y", "-i", str(path), "-ac", "1", "-vn", "-map_metadata", "-1", tmp_path]
    try:
        subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True)
        y, sr = sf.read(tmp_path, dtype='float32', always_2d=True)
    finally:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
    return y, sr


def _decode_via_librosa(path: str):
    import librosa
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        y, sr = librosa.load(str(path), sr=None, mono=False)
    if y.ndim == 1:
        return y.astype(np.float32)[:, None], sr
    return y.T.astype(np.float32), sr


def _load_audio_any(path: str):
    """Load audio and return (y, sr) where y is float32 (N, C).

    Compressed formats go through ffmpeg first, PCM containers through
    soundfile first; librosa is the last resort for both. Raises DecodeError
    when every decoder fails.
    """
    ext = os.path.splitext(str(path))[1].lower()
    if ext in _COMPRESSED_EXTS:
        decoders = (_decode_via_ffmpeg, _decode_via_librosa,
                    lambda p: sf.read(p, dtype='float32', always_2d=True))
    else:
        decoders = (lambda p: sf.read(p, dtype='float32', always_2d=True),
                    _decode_via_ffmpeg, _decode_via_librosa)

    errors = []
    with _decode_lock_for(path):
        for decode in decoders:
            try:
                return decode(str(path))
            except Exception as e:
                errors.append(f"{type(e).__name__}: {e}")
    raise DecodeError(f"could not decode {path}: " + "; ".join(errors))


def to_mono(y: np.ndarray) -> np.ndarray:
    y = np.asarray(y, dtype=np.float32)
    if y.ndim == 1:
        return y
    return y.mean(axis=1).astype(np.float32)


def decode_file(path) -> SampleFrame:
    """Decode a file into a down-mixed mono SampleFrame."""
    y, sr = _load_audio_any(str(path))
    return SampleFrame(to_mono(y), sr)


def resample(samples: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    if int(orig_sr) == int(target_sr):
        return np.asarray(samples, dtype=np.float32)
    g = math.gcd(int(orig_sr), int(target_sr))
    out = resample_poly(np.asarray(samples, dtype=np.float64), int(target_sr) // g, int(orig_sr) // g)
    return out.astype(np.float32)


# --- Effect parameters ---

@dataclass(frozen=True)
class EffectParameter:
    name: str
    minimum: float
    maximum: float
    default: float
    unit: str = ""

    def clamp(self, value: float) -> float:
        v = float(value)
        if math.isnan(v):
            return self.default
        return float(max(self.minimum, min(self.maximum, v)))


PARAMETERS = (
    EffectParameter("master_volume", 0.0, 1.5, 1.0),
    EffectParameter("low", -20.0, 20.0, 0.0, "dB"),
    EffectParameter("mid", -20.0, 20.0, 0.0, "dB"),
    EffectParameter("high", -20.0, 20.0, 0.0, "dB"),
    EffectParameter("distortion", 0.0, 100.0, 0.0),
    EffectParameter("delay_time", 0.0, 5.0, 0.0, "s"),
    EffectParameter("delay_feedback", 0.0, 0.9, 0.0),
    EffectParameter("filter_freq", 20.0, 20000.0, 20000.0, "Hz"),
    EffectParameter("resonance", 0.0, 20.0, 0.0, "dB"),
    EffectParameter("release", 0.0, 1.0, 0.25, "s"),
    EffectParameter("pitch", -12.0, 12.0, 0.0, "st"),
    EffectParameter("tremolo_depth", 0.0, 1.0, 0.0),
    EffectParameter("tremolo_rate", 0.0, 20.0, 4.0, "Hz"),
)
_PARAMS_BY_NAME = {p.name: p for p in PARAMETERS}


def parameter(name: str) -> EffectParameter:
    try:
        return _PARAMS_BY_NAME[name]
    except KeyError:
        raise KeyError(f"unknown effect parameter {name!r}") from None


class PlaybackState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"


_TRANSITIONS = {
    PlaybackState.IDLE: {PlaybackState.LOADING},
    PlaybackState.LOADING: {PlaybackState.PLAYING, PlaybackState.IDLE},
    PlaybackState.PLAYING: {PlaybackState.PAUSED, PlaybackState.ENDED, PlaybackState.IDLE},
    PlaybackState.PAUSED: {PlaybackState.PLAYING, PlaybackState.IDLE},
    PlaybackState.ENDED: {PlaybackState.PLAYING, PlaybackState.IDLE},
}


def _default_stream_factory(samplerate, channels, blocksize, callback):
    try:
        import sounddevice as sd
    except OSError as e:  # PortAudio library missing
        raise AudioOutputUnavailableError(f"no audio backend: {e}") from e
    try:
        return sd.OutputStream(samplerate=samplerate, channels=channels, blocksize=blocksize,
                               dtype='float32', callback=callback)
    except sd.PortAudioError as e:
        raise AudioOutputUnavailableError(f"cannot open output stream: {e}") from e


class AudioEngine:
    """Owns the fixed processing graph, the output stream and the transport.

    source → pitch shifter → distortion → lowpass → low shelf → mid peak →
    high shelf → (dry + feedback delay) → tremolo → compressor → master gain →
    spectrum tap → output

    Only parameters change over the engine's lifetime, never the topology.
    Construction either yields a running engine or raises with nothing left
    open. Use teardown() (or a with-block) to release the stream.
    """

    def __init__(self, settings: EngineSettings | None = None, stream_factory=None):
        self.settings = settings or EngineSettings()
        self.sample_rate = self.settings.sample_rate
        self.lock = threading.Lock()
        self._closed = False
        self.stream = None

        self._build_graph()
        self._values = {p.name: p.default for p in PARAMETERS}

        self._source: np.ndarray | None = None
        self._track_id = None
        self._frames_out = 0
        self._state = PlaybackState.IDLE

        factory = stream_factory or _default_stream_factory
        try:
            self.stream = factory(self.sample_rate, self.settings.channels,
                                  self.settings.block_size, self._cb)
            self.stream.start()
        except AudioOutputUnavailableError:
            self._release()
            raise
        except Exception as e:
            self._release()
            raise AudioOutputUnavailableError(f"cannot start output stream: {e}") from e
        logger.debug("engine started at %d Hz, block %d", self.sample_rate, self.settings.block_size)

    def _build_graph(self):
        sr = self.sample_rate
        tc = self.settings.smoothing_seconds
        self.pitch_shifter = PitchShifter(sr, tc)
        self.shaper = WaveShaper(0.0)
        self.lowpass = Biquad("lowpass", sr, 20000.0, 0.0, time_constant=tc)
        self.low_eq = Biquad("lowshelf", sr, 320.0, time_constant=tc)
        self.mid_eq = Biquad("peaking", sr, 1000.0, q=0.5, time_constant=tc)
        self.high_eq = Biquad("highshelf", sr, 3200.0, time_constant=tc)
        self.delay = FeedbackDelay(self.settings.max_delay_seconds, sr, tc)
        self.tremolo = Tremolo(sr, rate=4.0, depth=0.0, time_constant=tc)
        self.compressor = Compressor(sr, time_constant=tc)
        self.master = Gain(1.0, sr, tc)
        self.spectrum = SpectrumTap(self.settings.fft_size)

    def _release(self):
        # stop the stream first: its callback takes the lock
        if self.stream is not None:
            try:
                self.stream.stop()
                self.stream.close()
            except Exception:
                logger.warning("error while closing output stream", exc_info=True)
        with self.lock:
            self._closed = True
            self.stream = None
            self._source = None
            for name in ("pitch_shifter", "shaper", "lowpass", "low_eq", "mid_eq", "high_eq",
                     "delay", "tremolo", "compressor", "master", "spectrum"):
                setattr(self, name, None)

    def teardown(self):
        """Stop audio and release the stream and every stage. Safe to call twice."""
        if self._closed:
            return
        with self.lock:
            self._state = PlaybackState.IDLE
        self._release()
        logger.debug("engine torn down")

    close = teardown

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.teardown()
        return False

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise AudioEngineError("engine has been torn down")

    # ====== Parameters ======

    def set_parameter(self, name: str, value: float) -> float:
        """Clamp and apply one parameter; continuous ones glide, the rest apply at once."""
        p = parameter(name)
        v = p.clamp(value)
        with self.lock:
            self._check_open()
            self._values[name] = v
            self._apply(name, v)
        return v

    def set_parameters(self, values: dict) -> dict:
        return {name: self.set_parameter(name, v) for name, v in values.items()}

    def get_parameter(self, name: str) -> float:
        parameter(name)
        return self._values[name]

    def parameters(self) -> dict:
        return dict(self._values)

    def reset_parameters(self):
        for p in PARAMETERS:
            self.set_parameter(p.name, p.default)

    def _apply(self, name, v):
        if name == "master_volume":
            self.master.gain.set_target(v)
        elif name == "low":
            self.low_eq.gain.set_target(v)
        elif name == "mid":
            self.mid_eq.gain.set_target(v)
        elif name == "high":
            self.high_eq.gain.set_target(v)
        elif name == "distortion":
            self.shaper.set_amount(v)
        elif name == "delay_time":
            self.delay.delay_time.set_target(v)
        elif name == "delay_feedback":
            self.delay.feedback.set_target(v)
        elif name == "filter_freq":
            self.lowpass.frequency.set_target(v)
        elif name == "resonance":
            self.lowpass.q.set_target(v)
        elif name == "release":
            self.compressor.release.set_target(v)
        elif name == "pitch":
            self.pitch_shifter.set_semitones(v)
        elif name in ("tremolo_depth", "tremolo_rate"):
            if name == "tremolo_depth":
                self.tremolo.depth.set_target(v)
            else:
                self.tremolo.rate.set_target(v)
            self.tremolo.baseline.set_target(1.0)

    # ====== Graph ======

    def render(self, block: np.ndarray) -> np.ndarray:
        """Run one mono block through the graph; returns the processed mono block."""
        x = np.asarray(block, dtype=np.float64).reshape(-1)
        x = self.pitch_shifter.process(x)
        x = self.shaper.process(x)
        x = self.lowpass.process(x)
        x = self.low_eq.process(x)
        x = self.mid_eq.process(x)
        x = self.high_eq.process(x)
        x = x + self.delay.process(x)
        x = self.tremolo.process(x)
        x = self.compressor.process(x)
        x = self.master.process(x)
        self.spectrum.push(x)
        return x

    def get_spectrum_snapshot(self) -> np.ndarray | None:
        """Byte magnitudes of the latest output; None once the engine is gone."""
        spectrum = self.spectrum
        if self._closed or spectrum is None:
            return None
        return spectrum.snapshot()

    def _halt_loops(self):
        # recirculating energy must not survive a stop or track switch
        self.delay.clear()
        self.pitch_shifter.clear()
        self.compressor.reset()

    def _cb(self, outdata, frames, time, status):
        if status:
            logger.debug("output stream status: %s", status)
        with self.lock:
            if self._closed:
                outdata[:] = 0.0
                return
            block = np.zeros(frames, dtype=np.float64)
            if self._state is PlaybackState.PLAYING and self._source is not None:
                pos = self._frames_out
                chunk = self._source[pos:pos + frames]
                block[:chunk.shape[0]] = chunk
                self._frames_out = pos + chunk.shape[0]
                if self._frames_out >= self._source.shape[0]:
                    self._state = PlaybackState.ENDED
                    logger.debug("track %r ended", self._track_id)
            y = self.render(block)
        outdata[:] = y.astype(np.float32)[:, None]

    # ====== Transport ======

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def track_id(self):
        return self._track_id

    def _transition(self, new: PlaybackState):
        if new not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(f"cannot go from {self._state.value} to {new.value}")
        logger.debug("transport %s → %s", self._state.value, new.value)
        self._state = new

    def connect_source(self, source: SampleFrame):
        """Attach a decoded mono buffer as the graph's input, rewound to the start."""
        y = resample(source.samples, source.sample_rate, self.sample_rate)
        with self.lock:
            self._check_open()
            self._source = y
            self._frames_out = 0

    def load(self, source: SampleFrame, track_id=None):
        """Stop whatever plays, then attach a new track (state becomes Loading)."""
        self.stop()
        with self.lock:
            self._check_open()
            self._transition(PlaybackState.LOADING)
            self._track_id = track_id
        try:
            self.connect_source(source)
        except Exception:
            with self.lock:
                self._state = PlaybackState.IDLE
                self._track_id = None
            raise

    def play_track(self, track_id, source: SampleFrame):
        """Start a track; asking for the track already loaded toggles play/pause."""
        if track_id is not None and track_id == self._track_id and self._state is not PlaybackState.IDLE:
            self.toggle()
            return
        self.load(source, track_id)
        self.play()

    def play(self):
        with self.lock:
            self._check_open()
            if self._state is PlaybackState.PLAYING:
                return
            if (self._state is PlaybackState.ENDED and self._source is not None
                    and self._frames_out >= self._source.shape[0]):
                self._frames_out = 0
            self._transition(PlaybackState.PLAYING)

    def pause(self):
        with self.lock:
            if self._state is PlaybackState.PAUSED:
                return
            self._transition(PlaybackState.PAUSED)

    def toggle(self):
        if self._state is PlaybackState.PLAYING:
            self.pause()
        else:
            self.play()

    def stop(self):
        with self.lock:
            if self._state is PlaybackState.IDLE:
                return
            self._transition(PlaybackState.IDLE)
            self._frames_out = 0
            if not self._closed:
                self._halt_loops()

    def is_playing(self) -> bool:
        return self._state is PlaybackState.PLAYING

    def duration_seconds(self) -> float:
        if self._source is None:
            return 0.0
        return self._source.shape[0] / float(self.sample_rate)

    def position_seconds(self) -> float:
        return self._frames_out / float(self.sample_rate)

    def seek(self, t: float):
        t = float(t)
        if not math.isfinite(t):
            return
        with self.lock:
            if self._source is None:
                return
            n = self._source.shape[0]
            self._frames_out = int(max(0, min(n, round(t * self.sample_rate))))
