"""Append-only audit log of AI generated and edited images."""
from __future__ import annotations

import logging

from pydantic import BaseModel, Field, ValidationError as _PydanticValidationError

from ..tools.errors import StorageError
from .hashing import compute_key
from .metadata import now_utc_iso
from .storage import LocalFileStorage

AI_IMAGE_DIR = "ai_images"
IMAGE_TYPES = ("generated", "edited")

log = logging.getLogger("imgedit.cache.ai_records")


class GenerationRecord(BaseModel):
    image_url: str
    image_type: str
    prompt: str
    negative_prompt: str | None = None
    aspect_ratio: str | None = None
    resolution: str | None = None
    steps: int | None = None
    source_image_url: str | None = None
    created_at: str = Field(default_factory=now_utc_iso)


def record_key(record: GenerationRecord) -> str:
    # Filenames sort by timestamp, so a descending sort lists newest first.
    stamp = record.created_at.replace(":", "-")
    digest = compute_key(f"{record.image_type}:{record.image_url}:{record.prompt}")
    return f"{AI_IMAGE_DIR}/{stamp}_{digest}.json"


def save_ai_image_record(storage: LocalFileStorage, record: GenerationRecord) -> str:
    key = record_key(record)
    storage.put(key, record.model_dump_json(indent=2).encode("utf-8"))
    return key


def list_ai_image_records(
    storage: LocalFileStorage,
    limit: int = 10,
    image_type: str = "all",
) -> list[GenerationRecord]:
    directory = storage.resolve_path(AI_IMAGE_DIR)
    try:
        paths = sorted(directory.glob("*.json"), key=lambda p: p.name, reverse=True)
    except OSError as exc:
        raise StorageError(f"list {AI_IMAGE_DIR} failed: {exc}") from exc

    records: list[GenerationRecord] = []
    for path in paths:
        if len(records) >= limit:
            break
        try:
            record = GenerationRecord.model_validate_json(path.read_bytes())
        except OSError as exc:
            raise StorageError(f"read {path.name} failed: {exc}") from exc
        except _PydanticValidationError:
            log.warning("skipping unreadable ai image record %s", path.name)
            continue
        if image_type != "all" and record.image_type != image_type:
            continue
        records.append(record)
    return records
