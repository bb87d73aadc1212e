"""
Spectrum tap for visualisation.

The audio callback pushes every processed block into a ring of the last
`fft_size` samples; the UI reads a snapshot once per drawn frame. Snapshot
values follow the usual analyser conventions: Blackman window, magnitude
normalised by the FFT size, smoothed against the previous snapshot, then
mapped from [min_db, max_db] onto 0..255.
"""

import threading

import numpy as np


class SpectrumTap:
    def __init__(self, fft_size: int = 256, smoothing: float = 0.8,
                 min_db: float = -100.0, max_db: float = -30.0):
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        if not 0.0 <= smoothing < 1.0:
            raise ValueError("smoothing must be in [0, 1)")
        if min_db >= max_db:
            raise ValueError("min_db must be below max_db")
        self.fft_size = int(fft_size)
        self.smoothing = float(smoothing)
        self.min_db = float(min_db)
        self.max_db = float(max_db)
        self._ring = np.zeros(self.fft_size, dtype=np.float64)
        self._w = 0
        self._window = np.blackman(self.fft_size)
        self._smoothed = np.zeros(self.bin_count, dtype=np.float64)
        self._lock = threading.Lock()

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, block: np.ndarray) -> np.ndarray:
        """Record a block and pass it through unchanged."""
        x = np.asarray(block, dtype=np.float64).reshape(-1)
        with self._lock:
            if x.shape[0] >= self.fft_size:
                self._ring[:] = x[-self.fft_size:]
                self._w = 0
            else:
                idx = (self._w + np.arange(x.shape[0])) % self.fft_size
                self._ring[idx] = x
                self._w = (self._w + x.shape[0]) % self.fft_size
        return block

    def _latest(self) -> np.ndarray:
        with self._lock:
            return np.roll(self._ring, -self._w)

    def magnitudes(self) -> np.ndarray:
        """Smoothed linear magnitudes, one per bin (advances the smoothing state)."""
        frame = self._latest() * self._window
        mag = np.abs(np.fft.rfft(frame))[: self.bin_count] / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * mag
        return self._smoothed.copy()

    def snapshot(self) -> np.ndarray:
        """Byte-scaled magnitudes (uint8, length bin_count)."""
        mag = self.magnitudes()
        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(mag)
        scaled = 255.0 * (db - self.min_db) / (self.max_db - self.min_db)
        return np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0), 0, 255).astype(np.uint8)

    def reset(self) -> None:
        with self._lock:
            self._ring[:] = 0.0
            self._w = 0
        self._smoothed[:] = 0.0
