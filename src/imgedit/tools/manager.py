from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..batch import BatchOrchestrator
from ..cache import (
    FetchedImageMetadata,
    GenerationRecord,
    LocalFileStorage,
    OcrMetadata,
    ProcessedImageMetadata,
    compute_key,
    extension_for_mime,
    list_ai_image_records,
    load_metadata,
    save_ai_image_record,
    save_metadata,
)
from ..cache.ai_records import IMAGE_TYPES
from ..config import AppConfig
from ..imaging import (
    crop_pixels,
    cropped_dimensions,
    decode_image,
    encode_png,
    get_dimensions,
    rotate_pixels,
    rotated_dimensions,
)
from .errors import ConfigurationError, ImageToolError, StorageError, ValidationError
from .modelscope import BoundingBox, GenerateImageOptions, ModelScopeClient
from .source import ImageFetcher
from .validation import validate_http_url

MAX_GRID_COORD = 999
MAX_GENERATION_DIMENSION = 2048

DEFAULT_IMAGE_NAME = "fetched-image"
DEFAULT_IMAGE_DESCRIPTION = "Please analyse the image content."

ASPECT_RATIOS: dict[str, tuple[float, float]] = {
    "1:1": (1.0, 1.0),
    "16:9": (16.0, 9.0),
    "9:16": (9.0, 16.0),
    "4:3": (4.0, 3.0),
    "3:4": (3.0, 4.0),
    "3:2": (3.0, 2.0),
    "2:3": (2.0, 3.0),
}
# The generation model tops out at 2048 on either side, so 4k is served as 2k.
RESOLUTIONS: dict[str, float] = {"1k": 1024.0, "2k": 2048.0, "4k": 2048.0}


class RotateDirection(str, Enum):
    RIGHT_90 = "right_90"
    LEFT_90 = "left_90"
    FLIP_180 = "flip_180"

    @property
    def angle(self) -> int:
        return {"right_90": 90, "left_90": -90, "flip_180": 180}[self.value]


@dataclass(frozen=True)
class ToolResponse:
    url: str
    name: str
    mime_type: str
    text: str
    # Set only when the result could not be cached and is returned inline.
    inline_png: bytes | None = None

    def as_dict(self) -> dict[str, str]:
        return {"url": self.url, "name": self.name, "mimeType": self.mime_type, "text": self.text}


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    total_pixels: int
    mime_type: str
    size: int
    aspect_ratio: float | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "total_pixels": self.total_pixels,
            "mime_type": self.mime_type,
            "size": self.size,
            "aspect_ratio": self.aspect_ratio,
        }


def _round(value: float) -> int:
    return int(value + 0.5)


def generation_size(aspect_ratio: str | None = None, resolution: str | None = None) -> str:
    """Map an aspect ratio and resolution tier to a ``"<w>x<h>"`` size."""
    ratio_key = (aspect_ratio or "1:1").strip()
    res_key = (resolution or "1k").strip().lower()
    if res_key not in RESOLUTIONS:
        raise ValidationError("resolution must be one of: 1k, 2k, 4k")
    if ratio_key not in ASPECT_RATIOS:
        raise ValidationError("aspect_ratio must be one of: " + ", ".join(ASPECT_RATIOS))
    base = RESOLUTIONS[res_key]
    ratio_w, ratio_h = ASPECT_RATIOS[ratio_key]
    scale = base / max(ratio_w, ratio_h)
    width = float(_round(ratio_w * scale))
    height = float(_round(ratio_h * scale))
    if width > MAX_GENERATION_DIMENSION or height > MAX_GENERATION_DIMENSION:
        shrink = MAX_GENERATION_DIMENSION / max(width, height)
        width = float(_round(width * shrink))
        height = float(_round(height * shrink))
    return f"{int(width)}x{int(height)}"


class ImageToolManager:
    """Every image tool operation, backed by the artifact cache.

    Transform and OCR results are content-addressed: the same canonical
    request string always lands on the same cache prefix, so repeated calls
    are served from ``meta.json`` without refetching.
    """

    def __init__(
        self,
        storage: LocalFileStorage,
        *,
        fetcher: ImageFetcher | None = None,
        modelscope: ModelScopeClient | None = None,
        batch: BatchOrchestrator | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.storage = storage
        self.fetcher = fetcher or ImageFetcher()
        self.modelscope = modelscope or ModelScopeClient("")
        self.log = logger or logging.getLogger("imgedit.tools")
        self.batch = batch or BatchOrchestrator(logger=self.log.getChild("batch"))

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "ImageToolManager":
        storage = LocalFileStorage(cfg.cache_dir, cfg.cache_base_url)
        modelscope = ModelScopeClient(
            cfg.modelscope_api_key,
            api_root=cfg.modelscope_api_root,
            vision_model=cfg.vision_model,
            generation_model=cfg.generation_model,
            edit_model=cfg.edit_model,
            timeout=cfg.http_timeout,
            poll_interval=cfg.poll_interval,
            task_timeout=cfg.task_timeout,
        )
        return cls(storage, fetcher=ImageFetcher(cfg.http_timeout), modelscope=modelscope)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _has_credentials(self) -> bool:
        return bool(self.modelscope.api_key and self.modelscope.api_key.strip())

    def _require_credentials(self) -> None:
        if not self._has_credentials():
            raise ConfigurationError("missing MODELSCOPE_API_KEY")

    def _cached(self, prefix: str, kind: type) -> Any:
        # A metadata read failure is treated as a miss: the artifact is recomputed.
        try:
            record = load_metadata(self.storage, prefix, kind)
        except StorageError as exc:
            self.log.warning("cache read failed for %s: %s", prefix, exc)
            return None
        if record is None:
            self.log.debug("cache miss %s", prefix)
        return record

    def _store_result(self, prefix: str, cache_key_input: str, png: bytes, name: str, text: str) -> ToolResponse:
        result_key = LocalFileStorage.result_key(prefix, "png")
        try:
            self.storage.put(result_key, png)
        except StorageError as exc:
            self.log.warning("caching %s failed, returning image inline: %s", result_key, exc)
            return ToolResponse(url="", name=name, mime_type="image/png", text=text, inline_png=png)
        url = self.storage.public_url(result_key)
        save_metadata(self.storage, prefix, ProcessedImageMetadata(
            cache_key_input=cache_key_input,
            cached_image_key=result_key,
            cached_image_url=url,
            mime_type="image/png",
        ))
        return ToolResponse(url=url, name=name, mime_type="image/png", text=text)

    async def _fetch_rgba(self, url: str) -> tuple[bytes, int, int]:
        fetched = await self.fetcher.fetch(url)
        return decode_image(fetched.data, fetched.require_mime())

    # ------------------------------------------------------------------
    # fetch_image
    # ------------------------------------------------------------------

    async def fetch_image(self, url: str, focus: str | None = None) -> ToolResponse:
        url = validate_http_url(url)
        focus = (focus or "").strip() or None
        cache_key_input = f"{url}::{focus}" if focus else url
        prefix = LocalFileStorage.image_prefix(compute_key(cache_key_input))

        cached = self._cached(prefix, FetchedImageMetadata)
        if cached is not None:
            self.log.info("fetch_image cache hit %s", prefix)
            return ToolResponse(cached.cached_image_url, cached.name, cached.mime_type, cached.description)

        fetched = await self.fetcher.fetch(url)
        mime_type = fetched.require_mime()

        name, title, description = DEFAULT_IMAGE_NAME, "Fetched Image", DEFAULT_IMAGE_DESCRIPTION
        if self._has_credentials():
            try:
                desc_name, desc_text = await self.modelscope.describe_image(url, focus)
            except ImageToolError as exc:
                self.log.warning("describe_image failed for %s: %s", url, exc)
            else:
                if desc_name.strip():
                    name = title = desc_name.strip()
                if desc_text.strip():
                    description = desc_text.strip()

        original_key = LocalFileStorage.original_key(prefix, extension_for_mime(mime_type))
        self.storage.put(original_key, fetched.data)
        image_url = self.storage.public_url(original_key)
        save_metadata(self.storage, prefix, FetchedImageMetadata(
            cache_key_input=cache_key_input,
            cached_image_key=original_key,
            cached_image_url=image_url,
            mime_type=mime_type,
            original_url=url,
            name=name,
            title=title,
            description=description,
        ))
        return ToolResponse(image_url, name, mime_type, description)

    # ------------------------------------------------------------------
    # rotate_image / crop_image
    # ------------------------------------------------------------------

    async def rotate_image(self, url: str, direction: str) -> ToolResponse:
        url = validate_http_url(url)
        try:
            rotation = RotateDirection(direction)
        except ValueError as exc:
            raise ValidationError(
                "direction must be one of: " + ", ".join(d.value for d in RotateDirection)
            ) from exc
        cache_key_input = f"rotate:{url}:{rotation.value}"
        prefix = f"processed/{compute_key(cache_key_input)}"

        cached = self._cached(prefix, ProcessedImageMetadata)
        if cached is not None:
            self.log.info("rotate_image cache hit %s", prefix)
            return ToolResponse(cached.cached_image_url, "rotated-image", cached.mime_type, "Image rotated.")

        pixels, width, height = await self._fetch_rgba(url)
        new_width, new_height = rotated_dimensions(width, height, rotation.angle)
        rotated = rotate_pixels(pixels, width, height, rotation.angle)
        if not rotated:
            raise ValidationError("rotated image is empty")
        png = encode_png(rotated, new_width, new_height)
        return self._store_result(prefix, cache_key_input, png, "rotated-image", "Image rotated.")

    async def crop_image(self, url: str, x1: int, y1: int, x2: int, y2: int) -> ToolResponse:
        """Crop by a box on the 0-999 grid used by the vision model's boxes."""
        url = validate_http_url(url)
        coords = (x1, y1, x2, y2)
        if any(not isinstance(c, int) or c < 0 or c > MAX_GRID_COORD for c in coords):
            raise ValidationError(f"coordinates must be integers within [0, {MAX_GRID_COORD}]")
        cache_key_input = f"crop:{url}:{x1}:{y1}:{x2}:{y2}"
        prefix = f"processed/{compute_key(cache_key_input)}"

        cached = self._cached(prefix, ProcessedImageMetadata)
        if cached is not None:
            self.log.info("crop_image cache hit %s", prefix)
            return ToolResponse(cached.cached_image_url, "cropped-image", cached.mime_type, "Image cropped.")

        pixels, width, height = await self._fetch_rgba(url)
        left, right = sorted((x1 / 1000.0, x2 / 1000.0))
        top, bottom = sorted((y1 / 1000.0, y2 / 1000.0))
        new_width, new_height = cropped_dimensions(width, height, left, top, right, bottom)
        cropped = crop_pixels(pixels, width, height, left, top, right, bottom)
        if not cropped:
            raise ValidationError("cropped size is zero")
        png = encode_png(cropped, new_width, new_height)
        return self._store_result(prefix, cache_key_input, png, "cropped-image", "Image cropped.")

    # ------------------------------------------------------------------
    # ocr_extract
    # ------------------------------------------------------------------

    async def ocr_extract(self, urls: list[str]) -> list[ToolResponse]:
        if not urls:
            raise ValidationError("at least one image url is required")
        return await self.batch.run_batch(urls, self._ocr_one)

    async def _ocr_one(self, url: str) -> ToolResponse:
        cache_key_input = f"ocr:{url}"
        prefix = f"ocr/{compute_key(cache_key_input)}"

        cached = self._cached(prefix, OcrMetadata)
        if cached is not None:
            text = self.storage.get(cached.cached_text_key)
            if text is not None:
                self.log.info("ocr_extract cache hit %s", prefix)
                return ToolResponse(
                    cached.cached_image_url, "ocr-image", cached.mime_type,
                    text.decode("utf-8", errors="replace"),
                )

        self._require_credentials()
        fetched = await self.fetcher.fetch(url)
        mime_type = fetched.require_mime()
        text = await self.modelscope.extract_text(url)

        # Every write here is required; a failure fails the item.
        original_key = LocalFileStorage.original_key(prefix, extension_for_mime(mime_type))
        self.storage.put(original_key, fetched.data)
        image_url = self.storage.public_url(original_key)
        text_key = f"{prefix}/ocr.txt"
        self.storage.put(text_key, text.encode("utf-8"))
        save_metadata(self.storage, prefix, OcrMetadata(
            cache_key_input=cache_key_input,
            cached_image_key=original_key,
            cached_image_url=image_url,
            mime_type=mime_type,
            cached_text_key=text_key,
            cached_text_url=self.storage.public_url(text_key),
        ))
        return ToolResponse(image_url, "ocr-image", mime_type, text)

    # ------------------------------------------------------------------
    # locate_object
    # ------------------------------------------------------------------

    async def locate_object(self, url: str, object_name: str) -> list[BoundingBox]:
        url = validate_http_url(url)
        if not (object_name or "").strip():
            raise ValidationError("object_name must not be empty")
        self._require_credentials()
        return await self.modelscope.locate_object(url, object_name.strip())

    # ------------------------------------------------------------------
    # generate_image / edit_image
    # ------------------------------------------------------------------

    def _record(self, record: GenerationRecord) -> None:
        try:
            save_ai_image_record(self.storage, record)
        except StorageError as exc:
            self.log.warning("saving %s image record failed: %s", record.image_type, exc)

    async def generate_image(
        self,
        prompt: str,
        negative_prompt: str | None = None,
        aspect_ratio: str | None = None,
        resolution: str | None = None,
        steps: int | None = None,
    ) -> ToolResponse:
        if not (prompt or "").strip():
            raise ValidationError("prompt must not be empty")
        size = generation_size(aspect_ratio, resolution)
        self._require_credentials()
        self.log.info("generate_image aspect_ratio=%s resolution=%s size=%s", aspect_ratio, resolution, size)
        result = await self.modelscope.generate_image(GenerateImageOptions(
            prompt=prompt,
            negative_prompt=negative_prompt,
            size=size,
            steps=steps,
        ))
        self._record(GenerationRecord(
            image_url=result.image_url,
            image_type="generated",
            prompt=prompt,
            negative_prompt=negative_prompt,
            aspect_ratio=aspect_ratio,
            resolution=resolution,
            steps=steps,
        ))
        return ToolResponse(result.image_url, "generated-image", "image/png", "Image generated.")

    async def edit_image(
        self,
        url: str,
        prompt: str,
        size: str | None = None,
        steps: int | None = None,
    ) -> ToolResponse:
        url = validate_http_url(url)
        if not (prompt or "").strip():
            raise ValidationError("prompt must not be empty")
        self._require_credentials()
        result = await self.modelscope.edit_image(url, prompt, size, steps)
        self._record(GenerationRecord(
            image_url=result.image_url,
            image_type="edited",
            prompt=prompt,
            resolution=size,
            steps=steps,
            source_image_url=url,
        ))
        return ToolResponse(result.image_url, "edited-image", "image/png", "Image edited.")

    # ------------------------------------------------------------------
    # get_image_info / list_ai_images
    # ------------------------------------------------------------------

    async def get_image_info(self, url: str) -> ImageInfo:
        url = validate_http_url(url)
        fetched = await self.fetcher.fetch(url)
        mime_type = fetched.require_mime()
        width, height = get_dimensions(fetched.data, mime_type)
        return ImageInfo(
            width=width,
            height=height,
            total_pixels=width * height,
            mime_type=mime_type,
            size=len(fetched.data),
            aspect_ratio=(width / height) if height else None,
        )

    def list_ai_images(self, limit: int | None = 10, image_type: str | None = "all") -> list[GenerationRecord]:
        kind = (image_type or "all").strip()
        if kind != "all" and kind not in IMAGE_TYPES:
            raise ValidationError("image_type must be one of: generated, edited, all")
        return list_ai_image_records(self.storage, max(1, 10 if limit is None else int(limit)), kind)
