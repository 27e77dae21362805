"""Configuration loading from environment variables and neuranote.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_DATA_DIR = Path.home() / ".neuranote" / "data"
_CONFIG_FILENAME = "neuranote.toml"


@dataclass
class TokenConfig:
    """Token pricing and grants."""

    image_cost: int = 1
    voice_cost: int = 2
    signup_bonus: int = 100
    referral_bonus: int = 50
    max_retries: int = 3


@dataclass
class GeofenceConfig:
    default_radius: float = 200.0
    min_radius: float = 50.0
    max_radius: float = 5000.0


@dataclass
class PipelineConfig:
    """Summarization pipeline tuning."""

    auto_resolve_locations: bool = True
    provider_confidence_weight: float = 0.7
    unresolved_confidence_factor: float = 0.5
    image_cost: int = 1
    voice_cost: int = 2


@dataclass
class ProviderConfig:
    """Provider backends and credentials."""

    storage: str = "local"
    summarizer: str = "huggingface"
    timeout: int = 60
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    hf_api_token: str = ""
    hf_caption_model: str = "Salesforce/blip-image-captioning-large"
    hf_transcribe_model: str = "openai/whisper-large-v3"
    hf_summarize_model: str = "facebook/bart-large-cnn"
    google_maps_api_key: str = ""
    google_calendar_token: str = ""
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""


@dataclass
class WebhookConfig:
    """Location-update webhook listener."""

    host: str = "0.0.0.0"
    port: int = 9100
    dedup_ttl: int = 30


@dataclass
class SchedulerConfig:
    sweep_interval: int = 300


@dataclass
class NeuraNoteConfig:
    """Top-level NeuraNote configuration."""

    tokens: TokenConfig = field(default_factory=TokenConfig)
    geofence: GeofenceConfig = field(default_factory=GeofenceConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    data_dir: Path = _DEFAULT_DATA_DIR
    pid_file: Path = Path.home() / ".neuranote" / "neuranote.pid"
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> NeuraNoteConfig:
    """Load configuration from environment variables and optional neuranote.toml.

    Priority: environment variables > neuranote.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.neuranote/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, Path.home() / ".neuranote" / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    tokens_data = file_data.get("tokens", {})
    geofence_data = file_data.get("geofence", {})
    pipeline_data = file_data.get("pipeline", {})
    providers_data = file_data.get("providers", {})
    webhook_data = file_data.get("webhook", {})
    scheduler_data = file_data.get("scheduler", {})

    tokens = TokenConfig(
        image_cost=int(os.getenv("NEURANOTE_IMAGE_COST", tokens_data.get("image_cost", 1))),
        voice_cost=int(os.getenv("NEURANOTE_VOICE_COST", tokens_data.get("voice_cost", 2))),
        signup_bonus=int(tokens_data.get("signup_bonus", 100)),
        referral_bonus=int(tokens_data.get("referral_bonus", 50)),
        max_retries=int(tokens_data.get("max_retries", 3)),
    )

    config = NeuraNoteConfig(
        tokens=tokens,
        geofence=GeofenceConfig(
            default_radius=float(geofence_data.get("default_radius", 200.0)),
            min_radius=float(geofence_data.get("min_radius", 50.0)),
            max_radius=float(geofence_data.get("max_radius", 5000.0)),
        ),
        pipeline=PipelineConfig(
            auto_resolve_locations=bool(pipeline_data.get("auto_resolve_locations", True)),
            provider_confidence_weight=float(pipeline_data.get("provider_confidence_weight", 0.7)),
            unresolved_confidence_factor=float(
                pipeline_data.get("unresolved_confidence_factor", 0.5)
            ),
            image_cost=tokens.image_cost,
            voice_cost=tokens.voice_cost,
        ),
        providers=ProviderConfig(
            storage=os.getenv("NEURANOTE_STORAGE", providers_data.get("storage", "local")),
            summarizer=os.getenv(
                "NEURANOTE_SUMMARIZER", providers_data.get("summarizer", "huggingface")
            ),
            timeout=int(os.getenv("NEURANOTE_TIMEOUT", providers_data.get("timeout", 60))),
            anthropic_model=providers_data.get("anthropic_model", "claude-sonnet-4-5-20250929"),
            hf_api_token=os.getenv("HF_API_TOKEN", providers_data.get("hf_api_token", "")),
            hf_caption_model=providers_data.get(
                "hf_caption_model", "Salesforce/blip-image-captioning-large"
            ),
            hf_transcribe_model=providers_data.get("hf_transcribe_model", "openai/whisper-large-v3"),
            hf_summarize_model=providers_data.get("hf_summarize_model", "facebook/bart-large-cnn"),
            google_maps_api_key=os.getenv(
                "GOOGLE_MAPS_API_KEY", providers_data.get("google_maps_api_key", "")
            ),
            google_calendar_token=os.getenv(
                "GOOGLE_CALENDAR_TOKEN", providers_data.get("google_calendar_token", "")
            ),
            cloudinary_cloud_name=os.getenv(
                "CLOUDINARY_CLOUD_NAME", providers_data.get("cloudinary_cloud_name", "")
            ),
            cloudinary_api_key=os.getenv(
                "CLOUDINARY_API_KEY", providers_data.get("cloudinary_api_key", "")
            ),
            cloudinary_api_secret=os.getenv(
                "CLOUDINARY_API_SECRET", providers_data.get("cloudinary_api_secret", "")
            ),
        ),
        webhook=WebhookConfig(
            host=webhook_data.get("host", "0.0.0.0"),
            port=int(os.getenv("NEURANOTE_WEBHOOK_PORT", webhook_data.get("port", 9100))),
            dedup_ttl=int(webhook_data.get("dedup_ttl", 30)),
        ),
        scheduler=SchedulerConfig(
            sweep_interval=int(
                os.getenv("NEURANOTE_SWEEP_INTERVAL", scheduler_data.get("sweep_interval", 300))
            ),
        ),
        data_dir=Path(os.getenv("NEURANOTE_DATA_DIR", file_data.get("data_dir", str(_DEFAULT_DATA_DIR)))),
        log_level=os.getenv("NEURANOTE_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
