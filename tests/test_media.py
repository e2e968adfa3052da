"""Tests for multimodal input normalization."""
import base64

import httpx
import pytest

from ai.providers.media import infer_mime_type, normalize_audio, normalize_image, strip_data_url, to_base64
from ai.providers.types import MediaBlob
from core.errors import PromptExecutionError


def image_transport(content_type=None, status=200):
    def handler(request):
        headers = {"content-type": content_type} if content_type else {}
        return httpx.Response(status, content=b"\x89PNG", headers=headers)

    return httpx.MockTransport(handler)


class TestMimeInference:
    def test_header_wins(self):
        assert infer_mime_type("https://x/y.png", "image/webp; charset=binary") == "image/webp"

    def test_octet_stream_falls_back_to_extension(self):
        assert infer_mime_type("https://x/photo.JPG?size=2", "application/octet-stream") == "image/jpeg"

    def test_default_when_nothing_known(self):
        assert infer_mime_type("https://x/image") == "image/png"


class TestNormalizeImage:
    @pytest.mark.asyncio
    async def test_url_is_fetched(self):
        blob = await normalize_image("https://cdn.test/cat.gif", transport=image_transport())
        assert blob.data == b"\x89PNG"
        assert blob.mime_type == "image/gif"
        assert blob.name == "cat.gif"

    @pytest.mark.asyncio
    async def test_fetch_failure_is_prompt_error(self):
        with pytest.raises(PromptExecutionError) as exc_info:
            await normalize_image("https://cdn.test/cat.gif", transport=image_transport(status=404))
        assert "Failed to fetch image" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bytes_and_blobs_pass_through(self):
        blob = MediaBlob(b"abc", "image/jpeg")
        assert await normalize_image(blob) is blob
        from_bytes = await normalize_image(b"abc")
        assert from_bytes.mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_data_url_is_decoded(self):
        payload = base64.b64encode(b"pixels").decode()
        blob = await normalize_image(f"data:image/jpeg;base64,{payload}")
        assert blob.data == b"pixels"
        assert blob.mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_malformed_data_url_is_prompt_error(self):
        with pytest.raises(PromptExecutionError) as exc_info:
            await normalize_image("data:image/png;base64,abc")
        assert str(exc_info.value).startswith("Invalid data URL")
        assert exc_info.value.kind == "prompt_execution_failed"

    @pytest.mark.asyncio
    async def test_missing_file_is_prompt_error(self, tmp_path):
        with pytest.raises(PromptExecutionError):
            await normalize_image(tmp_path / "gone.png")

    @pytest.mark.asyncio
    async def test_path_is_read(self, tmp_path):
        path = tmp_path / "shot.webp"
        path.write_bytes(b"webp")
        blob = await normalize_image(path)
        assert blob.mime_type == "image/webp"
        assert blob.data == b"webp"

    @pytest.mark.asyncio
    async def test_unsupported_input(self):
        with pytest.raises(PromptExecutionError):
            await normalize_image(12345)


class TestNormalizeAudio:
    def test_bytes_default_to_wav(self):
        assert normalize_audio(b"RIFF").mime_type == "audio/wav"

    def test_missing_file_is_prompt_error(self, tmp_path):
        with pytest.raises(PromptExecutionError) as exc_info:
            normalize_audio(tmp_path / "gone.wav")
        assert "gone.wav" in str(exc_info.value)

    def test_string_rejected(self):
        with pytest.raises(PromptExecutionError):
            normalize_audio("https://x/a.mp3")


def test_base64_helpers():
    assert to_base64(MediaBlob(b"hi", "image/png")) == "aGk="
    assert strip_data_url("data:image/png;base64,aGk=") == "aGk="
    assert strip_data_url("aGk=") == "aGk="
