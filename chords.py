# chords.py
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from note_detection import PitchEstimate

# Enharmonic naming: sharps by default, flats for flat keys on request
SHARP_NAMES = ["C","C#","D","D#","E","F","F#","G","G#","A","A#","B"]
FLAT_NAMES  = ["C","Db","D","Eb","E","F","Gb","G","Ab","A","Bb","B"]
NOTE_NAMES = SHARP_NAMES

MAJOR = "Major"
MINOR = "Minor"
DIMINISHED = "Diminished"

_QUALITY_SUFFIX = {MAJOR: "", MINOR: "m", DIMINISHED: "dim"}

# --- Key estimation (Krumhansl-Schmuckler profiles) and naming helpers ---
MAJOR_PROFILE = np.array([6.35,2.23,3.48,2.33,4.38,4.09,2.52,5.19,2.39,3.66,2.29,2.88])
MINOR_PROFILE = np.array([6.33,2.68,3.52,5.38,2.60,3.53,2.54,4.75,3.98,2.69,3.34,3.17])

# Major flat keys: F, Bb, Eb, Ab, Db, Gb, Cb  -> indices {5,10,3,8,1,6,11}
_FLAT_MAJOR_TONICS = {5, 10, 3, 8, 1, 6, 11}


def use_flats_for_key(tonic_idx: int, mode: str) -> bool:
    """Return True if we should prefer flat spellings for this key."""
    if mode == MINOR:
        # Relative major is +3 semitones from minor tonic
        tonic_idx = (tonic_idx + 3) % 12
    return tonic_idx in _FLAT_MAJOR_TONICS


def pc_name(pc: int, use_flats: bool = False) -> str:
    return FLAT_NAMES[pc % 12] if use_flats else SHARP_NAMES[pc % 12]


def pc_index(name: str) -> int:
    names = {
        'C':0,'C#':1,'Db':1,'D':2,'D#':3,'Eb':3,'E':4,'F':5,'F#':6,'Gb':6,
        'G':7,'G#':8,'Ab':8,'A':9,'A#':10,'Bb':10,'B':11
    }
    return names[name]


class ChromaHistogram:
    """Twelve pitch-class counters. Only ever incremented, or reset as a whole."""

    def __init__(self):
        self._counts = np.zeros(12, dtype=np.int64)

    def add(self, pc: int) -> None:
        self._counts[int(pc) % 12] += 1

    def reset(self) -> None:
        self._counts[:] = 0

    @property
    def total(self) -> int:
        return int(self._counts.sum())

    def is_empty(self) -> bool:
        return self.total == 0

    def counts(self) -> np.ndarray:
        return self._counts.copy()

    def __getitem__(self, pc: int) -> int:
        return int(self._counts[pc])

    def __repr__(self) -> str:
        return f"ChromaHistogram({self._counts.tolist()})"

    @classmethod
    def from_counts(cls, counts: Iterable[int]) -> "ChromaHistogram":
        h = cls()
        arr = np.asarray(list(counts), dtype=np.int64)
        if arr.shape != (12,) or (arr < 0).any():
            raise ValueError("expected 12 non-negative counts")
        h._counts[:] = arr
        return h


@dataclass(frozen=True)
class KeyEstimate:
    """Estimated tonal centre. root/mode are None when the key is unknown."""

    root: int | None = None
    mode: str | None = None

    @property
    def known(self) -> bool:
        return self.root is not None

    @property
    def label(self) -> str:
        if not self.known:
            return "Unknown"
        return f"{NOTE_NAMES[self.root]} {self.mode}"

    def transposed(self, semitones: int) -> "KeyEstimate":
        """Key heard after shifting the track by whole semitones."""
        if not self.known:
            return self
        return KeyEstimate((self.root + int(round(semitones))) % 12, self.mode)

    def __str__(self) -> str:
        return self.label


UNKNOWN_KEY = KeyEstimate()


def parse_key(text: str) -> KeyEstimate:
    """Parse labels like 'C Major', 'Bb minor', 'F#m' or 'A'. Raises ValueError."""
    s = (text or "").strip()
    if not s:
        raise ValueError("empty key")
    if s.lower() == "unknown":
        return UNKNOWN_KEY
    parts = s.split()
    tonic = parts[0]
    mode_txt = " ".join(parts[1:]).lower()
    if not mode_txt and len(tonic) > 1 and tonic.endswith("m"):
        tonic, mode_txt = tonic[:-1], "min"
    if tonic[:1].islower():
        tonic = tonic[:1].upper() + tonic[1:]
    try:
        root = pc_index(tonic)
    except KeyError:
        raise ValueError(f"unknown tonic {tonic!r}") from None
    if not mode_txt or mode_txt.startswith("maj"):
        return KeyEstimate(root, MAJOR)
    if mode_txt.startswith("min"):
        return KeyEstimate(root, MINOR)
    raise ValueError(f"unknown mode {mode_txt!r}")


def key_correlation(counts, root: int, profile) -> float:
    """Dot product of the histogram rotated to `root` with a key profile."""
    counts = np.asarray(counts, dtype=float)
    rotated = np.roll(counts, -int(root))  # rotated[j] == counts[(root + j) % 12]
    return float(np.dot(rotated, profile))


def estimate_key(hist: ChromaHistogram) -> KeyEstimate:
    """Best-correlating (root, mode) over all 24 keys.

    Candidates are visited root by root, major before minor, and only a
    strictly greater score replaces the current best, so ties resolve to the
    first candidate seen.
    """
    counts = hist.counts()
    if not counts.any():
        return UNKNOWN_KEY
    best_score = -np.inf
    best = UNKNOWN_KEY
    for root in range(12):
        for mode, profile in ((MAJOR, MAJOR_PROFILE), (MINOR, MINOR_PROFILE)):
            score = key_correlation(counts, root, profile)
            if score > best_score:
                best_score = score
                best = KeyEstimate(root, mode)
    return best


# Diatonic quality by interval above the tonic, plus the fallback quality
_MAJOR_KEY_QUALITIES = ({0: MAJOR, 5: MAJOR, 7: MAJOR,
                         2: MINOR, 4: MINOR, 9: MINOR,
                         11: DIMINISHED}, MAJOR)
_MINOR_KEY_QUALITIES = ({0: MINOR, 5: MINOR, 7: MINOR,
                         3: MAJOR, 8: MAJOR, 10: MAJOR,
                         2: DIMINISHED}, MINOR)


def chord_quality(pc: int, key: KeyEstimate) -> str:
    table, default = _MINOR_KEY_QUALITIES if key.mode == MINOR else _MAJOR_KEY_QUALITIES
    interval = (int(pc) - int(key.root) + 12) % 12
    return table.get(interval, default)


@dataclass(frozen=True)
class ChordEvent:
    time: float
    root: int
    quality: str

    @property
    def name(self) -> str:
        return f"{NOTE_NAMES[self.root]}{_QUALITY_SUFFIX[self.quality]}"

    def display_name(self, use_flats: bool = False) -> str:
        return f"{pc_name(self.root, use_flats)}{_QUALITY_SUFFIX[self.quality]}"


def accumulate_chroma(detections: Iterable[PitchEstimate],
                      hist: ChromaHistogram | None = None) -> ChromaHistogram:
    """Count the pitch class of every voiced detection."""
    hist = ChromaHistogram() if hist is None else hist
    for det in detections:
        if det.voiced:
            hist.add(det.pitch_class)
    return hist


def label_chords(detections: Iterable[PitchEstimate], key: KeyEstimate,
                 debounce: float = 1.5) -> list[ChordEvent]:
    """Turn per-window pitch detections into a debounced chord timeline.

    A new event is emitted only when its name differs from the previous one
    and at least `debounce` seconds have passed since that emission.
    """
    if not key.known:
        return []
    events: list[ChordEvent] = []
    last_name = None
    last_time = None
    for det in detections:
        if not det.voiced:
            continue
        pc = det.pitch_class
        ev = ChordEvent(float(det.time), pc, chord_quality(pc, key))
        if ev.name == last_name:
            continue
        if last_time is not None and ev.time - last_time < debounce:
            continue
        events.append(ev)
        last_name = ev.name
        last_time = ev.time
    return events
