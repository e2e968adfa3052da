"""Normalization of image/audio inputs for multimodal prompting."""
from __future__ import annotations

import base64
import binascii
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import httpx

from core.errors import PromptExecutionError
from core.logging import logger

from .types import MediaBlob

MediaInput = Union[str, bytes, bytearray, Path, MediaBlob]

DEFAULT_IMAGE_TYPE = "image/png"

IMAGE_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
}

AUDIO_TYPES = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
}

FETCH_TIMEOUT = 30.0


def _extension(location: str) -> str:
    path = urlparse(location).path or location
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def _file_name(location: str, default: str) -> str:
    path = urlparse(location).path or location
    return path.rsplit("/", 1)[-1] or default


def infer_mime_type(location: str, content_type: Optional[str] = None, default: str = DEFAULT_IMAGE_TYPE) -> str:
    """Content-type header first, then the file extension, then ``default``."""
    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime and mime != "application/octet-stream":
            return mime
    ext = _extension(location)
    return IMAGE_TYPES.get(ext) or AUDIO_TYPES.get(ext) or default


def strip_data_url(data: str) -> str:
    """Drop a ``data:<mime>;base64,`` prefix if present."""
    return data.split(",", 1)[1] if "," in data else data


def _from_data_url(url: str) -> MediaBlob:
    header, _, payload = url.partition(",")
    mime = header[5:].split(";", 1)[0] or DEFAULT_IMAGE_TYPE
    try:
        data = base64.b64decode(payload)
    except (binascii.Error, ValueError) as e:
        raise PromptExecutionError(f"Invalid data URL: {e}") from e
    return MediaBlob(data=data, mime_type=mime, name="inline")


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        logger.error(f"Failed to read media file {path}: {e}")
        raise PromptExecutionError(f"Failed to read media file: {path.name}") from e


async def fetch_media(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> MediaBlob:
    logger.info(f"Fetching media from URL: {url}")
    async with httpx.AsyncClient(transport=transport, follow_redirects=True) as client:
        try:
            response = await client.get(url, timeout=FETCH_TIMEOUT)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch media from {url}: {e}")
            raise PromptExecutionError(f"Failed to fetch image: {e}") from e

    mime = infer_mime_type(url, response.headers.get("content-type"))
    blob = MediaBlob(data=response.content, mime_type=mime, name=_file_name(url, "image.png"))
    logger.debug(f"Media fetched: {blob.name} {blob.mime_type} {len(blob.data)} bytes")
    return blob


async def normalize_image(
    image: MediaInput,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MediaBlob:
    """URL → fetched blob; path → file bytes; bytes/MediaBlob pass through."""
    if isinstance(image, MediaBlob):
        return image
    if isinstance(image, (bytes, bytearray)):
        return MediaBlob(data=bytes(image), mime_type=DEFAULT_IMAGE_TYPE, name="image.png")
    if isinstance(image, Path):
        return MediaBlob(data=_read_file(image), mime_type=infer_mime_type(image.name), name=image.name)
    if isinstance(image, str):
        if image.startswith("data:"):
            return _from_data_url(image)
        return await fetch_media(image, transport=transport)
    raise PromptExecutionError("Invalid image input: must be URL, path, bytes or MediaBlob")


def normalize_audio(audio: MediaInput) -> MediaBlob:
    if isinstance(audio, MediaBlob):
        return audio
    if isinstance(audio, (bytes, bytearray)):
        return MediaBlob(data=bytes(audio), mime_type="audio/wav", name="audio.wav")
    if isinstance(audio, Path):
        return MediaBlob(
            data=_read_file(audio),
            mime_type=infer_mime_type(audio.name, default="audio/wav"),
            name=audio.name,
        )
    raise PromptExecutionError("Invalid audio input: must be path, bytes or MediaBlob")


def to_base64(blob: MediaBlob) -> str:
    return base64.b64encode(blob.data).decode("ascii")
