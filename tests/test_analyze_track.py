import soundfile as sf

import analyze_track
from conftest import C4, F4, G4, SR, progression


def test_format_time():
    assert analyze_track.format_time(0) == "0:00.0"
    assert analyze_track.format_time(75.3) == "1:15.3"


def test_prints_key_and_timeline(tmp_path, capsys):
    path = tmp_path / "prog.wav"
    sf.write(str(path), progression([C4, F4, G4, C4]).samples, SR)
    assert analyze_track.main([str(path)]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "Key: C Major"
    assert out[1:] == ["0:00.0  C", "0:02.0  F", "0:04.0  G", "0:06.0  C"]


def test_flats_follow_forced_key(tmp_path, capsys):
    path = tmp_path / "bb.wav"
    # A#3 / Bb3
    sf.write(str(path), progression([233.08]).samples, SR)
    analyze_track.main([str(path), "--key", "F major", "--flats"])
    out = capsys.readouterr().out.splitlines()
    assert out[1:] == ["0:00.0  Bb"]


def test_missing_file_soft_fails(tmp_path, capsys):
    assert analyze_track.main([str(tmp_path / "missing.wav")]) == 0
    captured = capsys.readouterr()
    assert captured.out.strip() == "Key: Unknown"
    assert "analysis failed" in captured.err


def test_flats_with_unknown_key_hint_use_estimate(tmp_path, capsys):
    path = tmp_path / "bb_unknown.wav"
    sf.write(str(path), progression([233.08]).samples, SR)
    analyze_track.main([str(path), "--key", "unknown", "--flats"])
    out = capsys.readouterr().out.splitlines()
    # estimated key is A# Major, a flat key
    assert out[1:] == ["0:00.0  Bb"]
