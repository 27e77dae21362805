"""Blob storage backends: local filesystem and Cloudinary."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import shutil
import time
import uuid
from pathlib import Path
from urllib.parse import unquote, urlparse

import aiohttp

from neuranote.errors import ProviderError, ValidationError
from neuranote.providers.http import HttpClient

logger = logging.getLogger(__name__)

AUDIO_SUFFIXES = {".m4a", ".mp3", ".wav", ".aac", ".ogg", ".flac", ".webm"}

# User ids become directory names
_ILLEGAL_USER_ID = re.compile(r'[<>:"/\\|?*\s]')


class LocalBlobStorage:
    """Copies uploads under ``<root>/<user_id>/`` and hands out ``file://`` URLs."""

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def name(self) -> str:
        return "local"

    async def upload(self, user_id: str, file: Path) -> str:
        if not user_id or user_id in (".", "..") or _ILLEGAL_USER_ID.search(user_id):
            raise ValidationError(f"Illegal user id: {user_id!r}")
        if not file.is_file():
            raise ValidationError(f"No such file: {file}")
        target_dir = self.root / user_id
        target = target_dir / f"{uuid.uuid4().hex}{file.suffix.lower()}"

        def _copy() -> None:
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file, target)

        await asyncio.to_thread(_copy)
        logger.debug("Stored %s as %s", file.name, target)
        return target.resolve().as_uri()

    async def delete(self, url: str) -> None:
        path = Path(unquote(urlparse(url).path))
        if self.root.resolve() not in path.resolve().parents:
            raise ValidationError(f"URL outside storage root: {url}")
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def health_check(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            return True
        except OSError:
            return False


def sign_params(params: dict[str, str], api_secret: str) -> str:
    """Cloudinary request signature: SHA-1 of sorted ``k=v`` pairs plus secret."""
    payload = "&".join(f"{k}={params[k]}" for k in sorted(params))
    return hashlib.sha1((payload + api_secret).encode("utf-8")).hexdigest()


def public_id_from_url(url: str) -> tuple[str, str]:
    """Split a Cloudinary delivery URL into ``(resource_type, public_id)``."""
    parts = urlparse(url).path.strip("/").split("/")
    try:
        upload_at = parts.index("upload")
    except ValueError:
        raise ValidationError(f"Not a Cloudinary upload URL: {url}")
    resource_type = parts[upload_at - 1] if upload_at > 0 else "image"
    rest = parts[upload_at + 1 :]
    if rest and rest[0].startswith("v") and rest[0][1:].isdigit():
        rest = rest[1:]
    if not rest:
        raise ValidationError(f"Not a Cloudinary upload URL: {url}")
    public_id = "/".join(rest)
    return resource_type, public_id.rsplit(".", 1)[0]


class CloudinaryStorage:
    """Signed uploads to Cloudinary. Audio goes up as the ``video`` resource type."""

    API_BASE = "https://api.cloudinary.com/v1_1"

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        *,
        folder: str = "neuranote",
        timeout: int = 60,
        http: HttpClient | None = None,
    ) -> None:
        if not (cloud_name and api_key and api_secret):
            raise ValueError("Cloudinary requires cloud name, API key and API secret")
        self._cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._folder = folder
        self._http = http or HttpClient(self.name, timeout=timeout)

    @property
    def name(self) -> str:
        return "cloudinary"

    def _signed(self, params: dict[str, str]) -> dict[str, str]:
        signed = dict(params)
        signed["signature"] = sign_params(params, self._api_secret)
        signed["api_key"] = self._api_key
        return signed

    async def upload(self, user_id: str, file: Path) -> str:
        if not file.is_file():
            raise ValidationError(f"No such file: {file}")
        resource_type = "video" if file.suffix.lower() in AUDIO_SUFFIXES else "image"
        folder = f"{self._folder}/{user_id}" if resource_type == "image" else f"{self._folder}/audio/{user_id}"
        fields = self._signed({"folder": folder, "timestamp": str(int(time.time()))})

        content = await asyncio.to_thread(file.read_bytes)
        form = aiohttp.FormData()
        for key, value in fields.items():
            form.add_field(key, value)
        form.add_field("file", content, filename=file.name)

        data = await self._http.request_json(
            "POST", f"{self.API_BASE}/{self._cloud_name}/{resource_type}/upload", data=form
        )
        url = (data or {}).get("secure_url")
        if not url:
            raise ProviderError("cloudinary: upload response has no secure_url", reason="malformed_response")
        return url

    async def delete(self, url: str) -> None:
        resource_type, public_id = public_id_from_url(url)
        fields = self._signed({"public_id": public_id, "timestamp": str(int(time.time()))})
        data = await self._http.request_json(
            "POST", f"{self.API_BASE}/{self._cloud_name}/{resource_type}/destroy", data=fields
        )
        result = (data or {}).get("result")
        if result not in ("ok", "not found"):
            raise ProviderError(f"cloudinary: destroy returned {result!r}")

    async def health_check(self) -> bool:
        return bool(self._cloud_name and self._api_key)

    async def close(self) -> None:
        await self._http.close()
