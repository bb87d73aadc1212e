from dataclasses import dataclass, fields
from pathlib import Path
import json
import logging
import os

logger = logging.getLogger(__name__)

APP_SETTINGS_PATH = Path.home() / ".gigmixer_settings.json"


def settings_path() -> Path:
    """Settings file location; GIGMIXER_SETTINGS overrides the default."""
    override = os.environ.get("GIGMIXER_SETTINGS")
    return Path(override) if override else APP_SETTINGS_PATH


def load_settings() -> dict:
    p = settings_path()
    if p.exists():
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable settings file %s: %s", p, e)
            return {}
        if isinstance(data, dict):
            return data
    return {}


def save_settings(d: dict) -> None:
    p = settings_path()
    try:
        p.write_text(json.dumps(d, indent=2), encoding="utf-8")
    except OSError as e:
        logger.warning("could not write settings file %s: %s", p, e)


@dataclass(frozen=True)
class AnalysisSettings:
    """Parameters of one pitch/chroma/key/chord pass.

    window_size: samples handed to the pitch detector per step.
    stride_seconds: distance between window starts; None means one window.
    max_seconds: analyse only this prefix of the track (None = whole track).
    min_frequency / max_frequency: open interval of plausible musical pitch.
    yield_every: windows processed between cooperative yields.
    debounce_seconds: minimum spacing between emitted chord events.
    """

    window_size: int = 2048
    stride_seconds: float | None = 0.5
    max_seconds: float | None = None
    min_frequency: float = 30.0
    max_frequency: float = 2000.0
    yield_every: int = 10
    debounce_seconds: float = 1.5

    def __post_init__(self) -> None:
        if self.window_size < 64:
            raise ValueError(f"window_size must be >= 64, got {self.window_size}")
        if self.stride_seconds is not None and self.stride_seconds <= 0:
            raise ValueError(f"stride_seconds must be positive, got {self.stride_seconds}")
        if self.max_seconds is not None and self.max_seconds <= 0:
            raise ValueError(f"max_seconds must be positive, got {self.max_seconds}")
        if not 0 < self.min_frequency < self.max_frequency:
            raise ValueError(
                f"invalid frequency range ({self.min_frequency}, {self.max_frequency})"
            )
        if self.yield_every < 1:
            raise ValueError(f"yield_every must be >= 1, got {self.yield_every}")
        if self.debounce_seconds < 0:
            raise ValueError(f"debounce_seconds must be >= 0, got {self.debounce_seconds}")

    def stride_samples(self, sample_rate: int) -> int:
        if self.stride_seconds is None:
            return self.window_size
        return max(1, int(self.stride_seconds * sample_rate))

    @classmethod
    def live_key(cls) -> "AnalysisSettings":
        """Cheap preset used for the key readout next to the mixer."""
        return cls(stride_seconds=None, max_seconds=30.0)


@dataclass(frozen=True)
class EngineSettings:
    sample_rate: int = 44100
    block_size: int = 512
    channels: int = 2
    max_delay_seconds: float = 5.0
    smoothing_seconds: float = 0.01
    fft_size: int = 256

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.block_size <= 0:
            raise ValueError(f"block_size must be positive, got {self.block_size}")
        if self.channels not in (1, 2):
            raise ValueError(f"channels must be 1 or 2, got {self.channels}")
        if self.max_delay_seconds <= 0:
            raise ValueError("max_delay_seconds must be positive")
        if self.smoothing_seconds < 0:
            raise ValueError("smoothing_seconds must be >= 0")
        if self.fft_size < 32 or self.fft_size & (self.fft_size - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {self.fft_size}")


def _from_section(cls, section):
    if not isinstance(section, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in section.items() if k in known}
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as e:
        logger.warning("invalid %s in settings, using defaults: %s", cls.__name__, e)
        return cls()


def analysis_settings(settings: dict | None = None) -> AnalysisSettings:
    s = load_settings() if settings is None else settings
    return _from_section(AnalysisSettings, s.get("analysis"))


def engine_settings(settings: dict | None = None) -> EngineSettings:
    s = load_settings() if settings is None else settings
    return _from_section(EngineSettings, s.get("engine"))
