"""Tests for configuration loading."""

import pytest
from pathlib import Path

from neuranote.config import load_config

_ENV_KEYS = [
    "NEURANOTE_IMAGE_COST",
    "NEURANOTE_VOICE_COST",
    "NEURANOTE_STORAGE",
    "NEURANOTE_SUMMARIZER",
    "NEURANOTE_TIMEOUT",
    "NEURANOTE_WEBHOOK_PORT",
    "NEURANOTE_SWEEP_INTERVAL",
    "NEURANOTE_DATA_DIR",
    "NEURANOTE_LOG_LEVEL",
    "HF_API_TOKEN",
    "GOOGLE_MAPS_API_KEY",
    "GOOGLE_CALENDAR_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestConfig:
    def test_defaults(self):
        config = load_config()
        assert config.tokens.image_cost == 1
        assert config.tokens.voice_cost == 2
        assert config.tokens.signup_bonus == 100
        assert config.geofence.min_radius == 50
        assert config.geofence.max_radius == 5000
        assert config.providers.storage == "local"
        assert config.providers.summarizer == "huggingface"
        assert config.webhook.port == 9100
        assert config.scheduler.sweep_interval == 300
        assert config.log_level == "INFO"

    def test_pipeline_costs_follow_tokens(self, monkeypatch):
        monkeypatch.setenv("NEURANOTE_VOICE_COST", "5")
        config = load_config()
        assert config.tokens.voice_cost == 5
        assert config.pipeline.voice_cost == 5
        assert config.pipeline.image_cost == 1

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("NEURANOTE_SUMMARIZER", "anthropic")
        monkeypatch.setenv("NEURANOTE_TIMEOUT", "15")
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "maps-key")
        monkeypatch.setenv("NEURANOTE_DATA_DIR", "/tmp/nn-data")

        config = load_config()
        assert config.providers.summarizer == "anthropic"
        assert config.providers.timeout == 15
        assert config.providers.google_maps_api_key == "maps-key"
        assert config.data_dir == Path("/tmp/nn-data")

    def test_toml_file(self, tmp_path: Path):
        (tmp_path / "neuranote.toml").write_text("""
log_level = "DEBUG"

[tokens]
image_cost = 3
signup_bonus = 20

[geofence]
default_radius = 300

[pipeline]
auto_resolve_locations = false
provider_confidence_weight = 0.5

[webhook]
port = 9200
""")
        config = load_config()
        assert config.tokens.image_cost == 3
        assert config.tokens.signup_bonus == 20
        assert config.pipeline.image_cost == 3
        assert config.geofence.default_radius == 300
        assert config.pipeline.auto_resolve_locations is False
        assert config.pipeline.provider_confidence_weight == 0.5
        assert config.webhook.port == 9200
        assert config.log_level == "DEBUG"

    def test_env_beats_toml(self, tmp_path: Path, monkeypatch):
        (tmp_path / "neuranote.toml").write_text("[webhook]\nport = 9200\n")
        monkeypatch.setenv("NEURANOTE_WEBHOOK_PORT", "9300")
        assert load_config().webhook.port == 9300

    def test_explicit_path(self, tmp_path: Path):
        path = tmp_path / "custom.toml"
        path.write_text("[providers]\nstorage = \"cloudinary\"\n")
        assert load_config(path).providers.storage == "cloudinary"
