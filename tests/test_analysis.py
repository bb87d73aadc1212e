import asyncio

import numpy as np
import pytest
import soundfile as sf

from analysis import (AnalysisCoordinator, AnalysisResult, analyze_file, analyze_samples,
                      analyze_samples_sync, iter_windows, summarize)
from chords import MAJOR, KeyEstimate, UNKNOWN_KEY, parse_key
from conftest import C4, F4, G4, SR, progression, tone
from note_detection import NO_PITCH, PitchEstimate, SampleFrame
from utils import AnalysisSettings

C_MAJOR = KeyEstimate(0, MAJOR)


def timeline(result: AnalysisResult):
    return [(round(ev.time, 3), ev.name) for ev in result.chords]


class TestWindows:
    def test_partial_tail_is_dropped(self):
        s = AnalysisSettings(window_size=1024, stride_seconds=0.01)
        x = np.zeros(3000)
        starts = [start for start, _ in iter_windows(x, SR, s)]
        assert starts == [0, 441, 882, 1323, 1764]

    def test_max_seconds_limits_prefix(self):
        s = AnalysisSettings(max_seconds=1.0)
        starts = [start for start, _ in iter_windows(np.zeros(5 * SR), SR, s)]
        assert starts == [0, SR // 2]

    def test_back_to_back_windows_without_stride(self):
        s = AnalysisSettings(stride_seconds=None)
        starts = [start for start, _ in iter_windows(np.zeros(10000), SR, s)]
        assert starts == [0, 2048, 4096, 6144]


class TestSummarize:
    def test_out_of_range_pitches_are_ignored(self):
        dets = [PitchEstimate(0.0, 25.0), PitchEstimate(0.5, 2500.0), PitchEstimate(1.0, NO_PITCH)]
        r = summarize(dets, AnalysisSettings())
        assert r.key == UNKNOWN_KEY
        assert r.chords == ()
        assert len(r.detections) == 3

    def test_key_hint_labels_chords_but_key_is_estimated(self):
        dets = [PitchEstimate(t, 440.0) for t in (0.0, 0.5, 1.0)]
        r = summarize(dets, AnalysisSettings(), key_hint=C_MAJOR)
        assert r.key.label == "A Major"
        assert [ev.name for ev in r.chords] == ["Am"]


class TestEndToEnd:
    def test_chord_progression(self, chord_track):
        r = analyze_samples_sync(chord_track)
        assert r.ok
        assert r.key == C_MAJOR
        assert timeline(r) == [(0.0, "C"), (2.0, "F"), (4.0, "G"), (6.0, "C")]
        assert sum(r.histogram) == 16

    def test_forced_key_gives_same_timeline(self, chord_track):
        r = analyze_samples_sync(chord_track, key_hint=parse_key("C Major"))
        assert timeline(r) == [(0.0, "C"), (2.0, "F"), (4.0, "G"), (6.0, "C")]

    def test_silence(self):
        r = analyze_samples_sync(SampleFrame(np.zeros(3 * SR), SR))
        assert r.ok
        assert r.key.label == "Unknown"
        assert r.chords == ()

    def test_live_key_preset(self, chord_track):
        r = analyze_samples_sync(chord_track, AnalysisSettings.live_key())
        assert r.key == C_MAJOR

    def test_async_matches_sync(self, chord_track):
        r = asyncio.run(analyze_samples(chord_track))
        assert r.key == C_MAJOR
        assert timeline(r) == timeline(analyze_samples_sync(chord_track))


class TestProgress:
    def test_monotonic_and_ends_at_100(self, chord_track):
        seen = []
        asyncio.run(analyze_samples(chord_track, AnalysisSettings(stride_seconds=0.05),
                                    progress=seen.append))
        assert seen[-1] == 100
        assert seen == sorted(seen)
        assert all(0 <= p <= 100 for p in seen)
        assert seen.count(100) == 1

    def test_reports_100_on_failure(self):
        seen = []
        r = asyncio.run(analyze_file("/nonexistent/track.wav", progress=seen.append))
        assert seen == [100]
        assert not r.ok


class TestSoftFailure:
    def test_undecodable_file(self, tmp_path):
        bad = tmp_path / "broken.wav"
        bad.write_bytes(b"not audio at all")
        r = asyncio.run(analyze_file(bad, track_id="x"))
        assert r.error
        assert r.key == UNKNOWN_KEY
        assert r.chords == ()
        assert r.track_id == "x"

    def test_detector_error_is_reported(self, chord_track, monkeypatch):
        import analysis

        def boom(window, sample_rate):
            raise FloatingPointError("bad window")

        monkeypatch.setattr(analysis, "detect_pitch", boom)
        r = asyncio.run(analyze_samples(chord_track))
        assert r.error == "FloatingPointError: bad window"
        assert r.key.label == "Unknown"

    def test_decodes_wav(self, tmp_path):
        path = tmp_path / "prog.wav"
        sf.write(str(path), progression([C4, F4, G4, C4]).samples, SR)
        r = asyncio.run(analyze_file(path))
        assert r.ok
        assert r.key == C_MAJOR
        assert [name for _, name in timeline(r)] == ["C", "F", "G", "C"]


class TestCoordinator:
    def test_only_newest_pass_publishes(self):
        published = []

        async def main():
            coord = AnalysisCoordinator(on_result=published.append)
            first = coord.start("old", SampleFrame(tone(440.0, 3.0), SR))
            second = coord.start("new", SampleFrame(tone(C4, 3.0), SR))
            await asyncio.gather(first, second, return_exceptions=True)
            return coord, first

        coord, first = asyncio.run(main())
        assert first.cancelled()
        assert [r.track_id for r in published] == ["new"]
        assert coord.current.track_id == "new"
        assert coord.key is not None and coord.key.known

    def test_stale_result_is_dropped(self):
        published = []

        async def main():
            coord = AnalysisCoordinator(on_result=published.append)
            coord.start("a", SampleFrame(np.zeros(SR), SR))
            stale_gen = coord.generation
            coord.invalidate()

            async def make():
                return AnalysisResult(key=C_MAJOR, track_id="a")

            result = await coord._run(stale_gen, make)
            return coord, result

        coord, result = asyncio.run(main())
        assert result.key == C_MAJOR
        assert published == []
        assert coord.current is None and coord.key is None

    def test_progress_is_tagged_with_track(self, chord_track):
        seen = []

        async def main():
            coord = AnalysisCoordinator(on_progress=lambda tid, pct: seen.append((tid, pct)))
            await coord.start("song", chord_track)

        asyncio.run(main())
        assert seen[-1] == ("song", 100)
        assert {tid for tid, _ in seen} == {"song"}

    def test_needs_a_source(self):
        async def main():
            AnalysisCoordinator().start("nothing")

        with pytest.raises(ValueError):
            asyncio.run(main())
