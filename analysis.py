"""
Offline harmony analysis: pitch per window → chroma → key → chord timeline.

One implementation serves both the key readout next to the mixer and the
standalone chord tool; they differ only in AnalysisSettings. Passes run as
coroutines that yield to the event loop every few windows, and
AnalysisCoordinator makes sure only the newest pass per track publishes.
"""

from dataclasses import dataclass, field
import asyncio
import logging
from typing import Callable, Iterator

import numpy as np

from chords import (ChordEvent, ChromaHistogram, KeyEstimate, UNKNOWN_KEY, accumulate_chroma,
                    estimate_key, label_chords)
from note_detection import PitchEstimate, SampleFrame, detect_pitch
from utils import AnalysisSettings

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int], None]


@dataclass(frozen=True)
class AnalysisResult:
    key: KeyEstimate = UNKNOWN_KEY
    chords: tuple[ChordEvent, ...] = ()
    detections: tuple[PitchEstimate, ...] = ()
    histogram: tuple[int, ...] = field(default=(0,) * 12)
    error: str | None = None
    track_id: object = None

    @property
    def ok(self) -> bool:
        return self.error is None


def failed(error: str, track_id=None) -> AnalysisResult:
    return AnalysisResult(error=error, track_id=track_id)


def iter_windows(samples: np.ndarray, sample_rate: int,
                 settings: AnalysisSettings) -> Iterator[tuple[int, np.ndarray]]:
    """Yield (start index, window) pairs; a trailing partial window is dropped."""
    n = samples.shape[0]
    if settings.max_seconds is not None:
        n = min(n, int(settings.max_seconds * sample_rate))
    stride = settings.stride_samples(sample_rate)
    for start in range(0, n, stride):
        win = samples[start:start + settings.window_size]
        if win.shape[0] < settings.window_size:
            break
        yield start, win


def _in_range(det: PitchEstimate, settings: AnalysisSettings) -> bool:
    return det.voiced and settings.min_frequency < det.frequency < settings.max_frequency


def summarize(detections, settings: AnalysisSettings,
              key_hint: KeyEstimate | None = None, track_id=None) -> AnalysisResult:
    """Chroma, key and chords from per-window detections."""
    usable = [d for d in detections if _in_range(d, settings)]
    hist = accumulate_chroma(usable, ChromaHistogram())
    key = estimate_key(hist)
    label_key = key_hint if key_hint is not None and key_hint.known else key
    chords = label_chords(usable, label_key, settings.debounce_seconds)
    return AnalysisResult(
        key=key,
        chords=tuple(chords),
        detections=tuple(detections),
        histogram=tuple(int(c) for c in hist.counts()),
        track_id=track_id,
    )


def analyze_samples_sync(frame: SampleFrame, settings: AnalysisSettings | None = None,
                         key_hint: KeyEstimate | None = None) -> AnalysisResult:
    settings = settings or AnalysisSettings()
    sr = frame.sample_rate
    detections = [PitchEstimate(start / sr, detect_pitch(win, sr))
                  for start, win in iter_windows(frame.samples, sr, settings)]
    return summarize(detections, settings, key_hint)


async def analyze_samples(frame: SampleFrame, settings: AnalysisSettings | None = None,
                          key_hint: KeyEstimate | None = None,
                          progress: ProgressFn | None = None,
                          track_id=None) -> AnalysisResult:
    """Cooperative analysis pass. Never raises except for cancellation."""
    settings = settings or AnalysisSettings()
    try:
        sr = frame.sample_rate
        samples = frame.samples
        total = samples.shape[0]
        if settings.max_seconds is not None:
            total = min(total, int(settings.max_seconds * sr))
        detections = []
        for i, (start, win) in enumerate(iter_windows(samples, sr, settings)):
            if i and i % settings.yield_every == 0:
                if progress is not None and total:
                    progress(min(99, int(round(100.0 * start / total))))
                await asyncio.sleep(0)
            detections.append(PitchEstimate(start / sr, detect_pitch(win, sr)))
        result = summarize(detections, settings, key_hint, track_id)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("analysis failed: %s", e, exc_info=True)
        result = failed(f"{type(e).__name__}: {e}", track_id)
    if progress is not None:
        progress(100)
    return result


async def analyze_file(path, settings: AnalysisSettings | None = None,
                       key_hint: KeyEstimate | None = None,
                       progress: ProgressFn | None = None,
                       track_id=None) -> AnalysisResult:
    """Decode off the event loop, then analyse. Decode failures soft-fail."""
    from audio_engine import decode_file
    try:
        frame = await asyncio.to_thread(decode_file, path)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("decode failed for %s: %s", path, e)
        if progress is not None:
            progress(100)
        return failed(f"{type(e).__name__}: {e}", track_id)
    return await analyze_samples(frame, settings, key_hint, progress, track_id)


class AnalysisCoordinator:
    """Runs one analysis pass at a time and publishes only the newest.

    Every start() bumps a generation counter; a pass whose generation is no
    longer current when it finishes is dropped, so a slow pass for an old
    track can never overwrite the state of the track now playing.
    """

    def __init__(self, settings: AnalysisSettings | None = None,
                 on_result: Callable[[AnalysisResult], None] | None = None,
                 on_progress: Callable[[object, int], None] | None = None):
        self.settings = settings or AnalysisSettings()
        self.on_result = on_result
        self.on_progress = on_progress
        self._generation = 0
        self._task: asyncio.Task | None = None
        self.current: AnalysisResult | None = None
        self.track_id = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def key(self) -> KeyEstimate | None:
        """Published key, or None while the current track is still being analysed."""
        return self.current.key if self.current is not None else None

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def start(self, track_id, frame: SampleFrame | None = None, path=None,
              key_hint: KeyEstimate | None = None) -> asyncio.Task:
        """Begin analysing a track (from samples or a file); needs a running loop."""
        if frame is None and path is None:
            raise ValueError("need either a sample frame or a path")
        self._generation += 1
        gen = self._generation
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.track_id = track_id
        self.current = None
        logger.debug("analysis generation %d for track %r", gen, track_id)

        def progress(pct: int):
            if self.on_progress is not None and self.is_current(gen):
                self.on_progress(track_id, pct)

        if frame is not None:
            def make_pass():
                return analyze_samples(frame, self.settings, key_hint, progress, track_id)
        else:
            def make_pass():
                return analyze_file(path, self.settings, key_hint, progress, track_id)
        self._task = asyncio.get_running_loop().create_task(self._run(gen, make_pass))
        return self._task

    async def _run(self, gen: int, make_pass) -> AnalysisResult:
        result = await make_pass()
        if not self.is_current(gen):
            logger.debug("dropping stale analysis (generation %d, now %d)", gen, self._generation)
            return result
        self.current = result
        if self.on_result is not None:
            self.on_result(result)
        return result

    def invalidate(self):
        """Forget the current track; any in-flight pass becomes stale."""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.current = None
        self.track_id = None
