from __future__ import annotations

from dataclasses import dataclass

import httpx

from ..imaging import detect_mime_type
from .errors import DecodeError, TransportError, is_retryable_status

_IMG_FETCH_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass(frozen=True)
class FetchedImage:
    url: str
    data: bytes
    detected_mime: str | None
    header_mime: str | None

    @property
    def mime_type(self) -> str | None:
        """Signature sniffing wins; the Content-Type header is the fallback."""
        return self.detected_mime or self.header_mime

    def require_mime(self) -> str:
        mime = self.mime_type
        if not mime:
            raise DecodeError("unsupported image type")
        return mime


def _header_mime(value: str | None) -> str | None:
    if not value:
        return None
    mime = value.split(";", 1)[0].strip()
    return mime or None


class ImageFetcher:
    def __init__(
        self,
        timeout: float = 60.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    async def fetch(self, url: str) -> FetchedImage:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=_IMG_FETCH_HEADERS,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TransportError(
                f"fetch image failed: HTTP {status}",
                status_code=status,
                retryable=is_retryable_status(status),
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"fetch image failed: {exc}", retryable=True) from exc

        data = response.content
        return FetchedImage(
            url=url,
            data=data,
            detected_mime=detect_mime_type(data),
            header_mime=_header_mime(response.headers.get("content-type")),
        )
