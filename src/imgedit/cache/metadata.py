"""Cache metadata records.

One ``meta.json`` per cached operation. The five record shapes share
``cache_key_input``, ``cached_image_key``, ``cached_image_url``, ``mime_type`` and
``created_at``; the ``kind`` field selects the per-kind payload.
"""
from __future__ import annotations

import datetime as _dt
from typing import Annotated, Literal, TypeVar, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError as _PydanticValidationError

from .storage import LocalFileStorage


def now_utc_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


class _MetadataBase(BaseModel):
    cache_key_input: str
    cached_image_key: str
    cached_image_url: str
    mime_type: str = "image/png"
    created_at: str = Field(default_factory=now_utc_iso)


M = TypeVar("M", bound=_MetadataBase)


class FetchedImageMetadata(_MetadataBase):
    kind: Literal["fetched"] = "fetched"
    original_url: str
    name: str
    title: str
    description: str


class ProcessedImageMetadata(_MetadataBase):
    kind: Literal["processed"] = "processed"


class OcrMetadata(_MetadataBase):
    kind: Literal["ocr"] = "ocr"
    cached_text_key: str
    cached_text_url: str


class GeneratedImageMetadata(_MetadataBase):
    kind: Literal["generated"] = "generated"


class EditedImageMetadata(_MetadataBase):
    kind: Literal["edited"] = "edited"


ArtifactMetadata = Annotated[
    Union[
        FetchedImageMetadata,
        ProcessedImageMetadata,
        OcrMetadata,
        GeneratedImageMetadata,
        EditedImageMetadata,
    ],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[ArtifactMetadata] = TypeAdapter(ArtifactMetadata)


def parse_metadata(raw: bytes) -> ArtifactMetadata | None:
    """Decode a ``meta.json`` payload; ``None`` if it is not a valid record."""
    try:
        return _adapter.validate_json(raw)
    except _PydanticValidationError:
        return None


def load_metadata(storage: LocalFileStorage, prefix: str, kind: type[M]) -> M | None:
    """Read ``<prefix>/meta.json`` and return it only if it is a *kind* record."""
    raw = storage.get(LocalFileStorage.meta_key(prefix))
    if raw is None:
        return None
    record = parse_metadata(raw)
    if not isinstance(record, kind):
        return None
    return record


def save_metadata(storage: LocalFileStorage, prefix: str, record: _MetadataBase) -> str:
    """Write *record* to ``<prefix>/meta.json``.

    Call only after every object the record points at has been stored.
    """
    key = LocalFileStorage.meta_key(prefix)
    storage.put(key, record.model_dump_json().encode("utf-8"))
    return key
