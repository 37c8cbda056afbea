from __future__ import annotations

import io
import sys
from pathlib import Path

import httpx
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from imgedit.tools.errors import DecodeError, TransportError, ValidationError
from imgedit.tools.source import ImageFetcher
from imgedit.tools.validation import validate_http_url


def _png() -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (3, 2), (1, 2, 3)).save(out, format="PNG")
    return out.getvalue()


@pytest.mark.parametrize("url", [
    "http://example.com/a.png",
    "https://example.com:8443/a.png?x=1",
    "  https://example.com/a.png  ",
])
def test_validate_http_url_accepts(url: str) -> None:
    assert validate_http_url(url) == url.strip()


@pytest.mark.parametrize("url", [
    "",
    "   ",
    "ftp://example.com/a.png",
    "file:///etc/passwd",
    "example.com/a.png",
    "https://",
    "http://example.com:notaport/a.png",
])
def test_validate_http_url_rejects(url: str) -> None:
    with pytest.raises(ValidationError):
        validate_http_url(url)


@pytest.mark.asyncio
async def test_fetch_sniffs_signature_over_header() -> None:
    data = _png()
    fetcher = ImageFetcher(transport=httpx.MockTransport(
        lambda req: httpx.Response(200, content=data, headers={"Content-Type": "image/jpeg"})
    ))
    fetched = await fetcher.fetch("https://img.test/a")
    assert fetched.data == data
    assert fetched.mime_type == "image/png"
    assert fetched.header_mime == "image/jpeg"


@pytest.mark.asyncio
async def test_fetch_falls_back_to_content_type() -> None:
    fetcher = ImageFetcher(transport=httpx.MockTransport(
        lambda req: httpx.Response(200, content=b"<svg/>", headers={"Content-Type": "image/svg+xml; charset=utf-8"})
    ))
    fetched = await fetcher.fetch("https://img.test/a.svg")
    assert fetched.detected_mime is None
    assert fetched.require_mime() == "image/svg+xml"


@pytest.mark.asyncio
async def test_fetch_unknown_type() -> None:
    fetcher = ImageFetcher(transport=httpx.MockTransport(
        lambda req: httpx.Response(200, content=b"????")
    ))
    fetched = await fetcher.fetch("https://img.test/a")
    with pytest.raises(DecodeError):
        fetched.require_mime()


@pytest.mark.asyncio
async def test_fetch_non_2xx_raises_with_status() -> None:
    fetcher = ImageFetcher(transport=httpx.MockTransport(lambda req: httpx.Response(404)))
    with pytest.raises(TransportError) as exc:
        await fetcher.fetch("https://img.test/missing.png")
    assert exc.value.status_code == 404
    assert exc.value.retryable is False


@pytest.mark.asyncio
async def test_fetch_follows_redirects() -> None:
    data = _png()

    def handler(req: httpx.Request) -> httpx.Response:
        if req.url.path == "/old.png":
            return httpx.Response(302, headers={"Location": "https://img.test/new.png"})
        return httpx.Response(200, content=data)

    fetched = await ImageFetcher(transport=httpx.MockTransport(handler)).fetch("https://img.test/old.png")
    assert fetched.data == data
