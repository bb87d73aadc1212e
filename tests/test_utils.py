import json

import pytest

from utils import (AnalysisSettings, EngineSettings, analysis_settings, engine_settings,
                   load_settings, save_settings, settings_path)


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    p = tmp_path / "settings.json"
    monkeypatch.setenv("GIGMIXER_SETTINGS", str(p))
    return p


class TestSettingsFile:
    def test_env_override(self, settings_file):
        assert settings_path() == settings_file

    def test_missing_file(self, settings_file):
        assert load_settings() == {}

    def test_corrupt_file(self, settings_file, caplog):
        settings_file.write_text("{not json", encoding="utf-8")
        assert load_settings() == {}
        assert "ignoring unreadable settings file" in caplog.text

    def test_non_object_file(self, settings_file):
        settings_file.write_text("[1, 2, 3]", encoding="utf-8")
        assert load_settings() == {}

    def test_round_trip(self, settings_file):
        save_settings({"analysis": {"window_size": 4096}})
        assert json.loads(settings_file.read_text(encoding="utf-8")) == {
            "analysis": {"window_size": 4096}}
        assert analysis_settings().window_size == 4096


class TestSections:
    def test_defaults_when_absent(self):
        assert analysis_settings({}) == AnalysisSettings()
        assert engine_settings({}) == EngineSettings()

    def test_unknown_keys_ignored(self):
        s = analysis_settings({"analysis": {"stride_seconds": 0.25, "colour": "blue"}})
        assert s.stride_seconds == 0.25

    def test_invalid_values_fall_back(self, caplog):
        assert engine_settings({"engine": {"fft_size": 300}}) == EngineSettings()
        assert "invalid EngineSettings" in caplog.text

    def test_non_dict_section(self):
        assert engine_settings({"engine": 5}) == EngineSettings()


class TestValidation:
    @pytest.mark.parametrize("kwargs", [
        {"window_size": 32},
        {"stride_seconds": 0},
        {"max_seconds": -1},
        {"min_frequency": 3000.0},
        {"yield_every": 0},
        {"debounce_seconds": -0.1},
    ])
    def test_analysis(self, kwargs):
        with pytest.raises(ValueError):
            AnalysisSettings(**kwargs)

    @pytest.mark.parametrize("kwargs", [
        {"sample_rate": 0},
        {"channels": 6},
        {"fft_size": 48},
        {"max_delay_seconds": 0},
    ])
    def test_engine(self, kwargs):
        with pytest.raises(ValueError):
            EngineSettings(**kwargs)

    def test_stride_samples(self):
        assert AnalysisSettings().stride_samples(44100) == 22050
        assert AnalysisSettings.live_key().stride_samples(44100) == 2048
