"""Daemon process: always-on mode for production.

Usage: python -m neuranote serve

Manages:
- Location webhook lifecycle
- Scheduler (reminder expiry, region sweeps, token expiry, heartbeat)
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from neuranote.config import NeuraNoteConfig, load_config
from neuranote.connectors.location_webhook import LocationWebhook
from neuranote.core import NeuraNote
from neuranote.providers.huggingface import (
    HuggingFaceCaptioner,
    HuggingFaceSummarizer,
    HuggingFaceTranscriber,
)
from neuranote.providers.storage import CloudinaryStorage, LocalBlobStorage
from neuranote.scheduler.jobs import Scheduler

logger = logging.getLogger(__name__)


class NeuraNoteDaemon:
    """Always-on daemon process."""

    def __init__(self, config: NeuraNoteConfig | None = None) -> None:
        self.config = config or load_config()
        self._shutdown_event = asyncio.Event()

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.config.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        if self.config.pid_file.exists():
            self.config.pid_file.unlink()

    def _check_existing(self) -> None:
        if not self.config.pid_file.exists():
            return
        try:
            pid = int(self.config.pid_file.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"NeuraNote daemon already running (pid={pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            # Stale PID file
            self._remove_pid()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Build components ─────────────────────────────────────

    def build_app(self) -> NeuraNote:
        app = NeuraNote(self.config)
        app.add_provider(self._build_storage())
        app.add_provider(self._build_summarizer())

        providers = self.config.providers
        app.add_provider(
            HuggingFaceCaptioner(
                providers.hf_caption_model, providers.hf_api_token, timeout=providers.timeout
            )
        )
        app.add_provider(
            HuggingFaceTranscriber(
                providers.hf_transcribe_model, providers.hf_api_token, timeout=providers.timeout
            )
        )

        if providers.google_maps_api_key:
            from neuranote.providers.google import GoogleGeocoder

            app.add_provider(GoogleGeocoder(providers.google_maps_api_key, timeout=providers.timeout))
        else:
            logger.info("No Google Maps key; locations stay unresolved")

        if providers.google_calendar_token:
            from neuranote.providers.google import GoogleCalendarProvider

            app.add_provider(
                GoogleCalendarProvider(providers.google_calendar_token, timeout=providers.timeout)
            )
        else:
            logger.info("No Google Calendar token; calendar reminders will not sync")

        return app

    def _build_storage(self):
        providers = self.config.providers
        if providers.storage == "local":
            return LocalBlobStorage(self.config.data_dir / "blobs")
        elif providers.storage == "cloudinary":
            return CloudinaryStorage(
                providers.cloudinary_cloud_name,
                providers.cloudinary_api_key,
                providers.cloudinary_api_secret,
                timeout=providers.timeout,
            )
        else:
            raise ValueError(f"Unknown storage backend: {providers.storage}")

    def _build_summarizer(self):
        providers = self.config.providers
        if providers.summarizer == "huggingface":
            return HuggingFaceSummarizer(
                providers.hf_summarize_model, providers.hf_api_token, timeout=providers.timeout
            )
        elif providers.summarizer == "anthropic":
            from neuranote.providers.anthropic_api import AnthropicSummarizer

            return AnthropicSummarizer(model=providers.anthropic_model, timeout=providers.timeout)
        else:
            raise ValueError(f"Unknown summarizer: {providers.summarizer}")

    def _build_connectors(self, app: NeuraNote) -> None:
        app.add_connector(LocationWebhook(self.config.webhook))

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        self._check_existing()
        self._write_pid()
        self._setup_signals()

        app = self.build_app()
        self._build_connectors(app)

        scheduler = Scheduler(app, self.config)

        logger.info(
            "NeuraNote daemon starting (storage=%s, summarizer=%s)",
            self.config.providers.storage,
            self.config.providers.summarizer,
        )

        try:
            await asyncio.gather(
                app.start(),
                scheduler.start(self._shutdown_event),
            )
        except asyncio.CancelledError:
            pass
        finally:
            await app.stop()
            self._remove_pid()
            logger.info("NeuraNote daemon stopped.")
