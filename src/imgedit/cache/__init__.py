from .ai_records import GenerationRecord, list_ai_image_records, save_ai_image_record
from .hashing import compute_key
from .metadata import (
    ArtifactMetadata,
    EditedImageMetadata,
    FetchedImageMetadata,
    GeneratedImageMetadata,
    OcrMetadata,
    ProcessedImageMetadata,
    load_metadata,
    parse_metadata,
    save_metadata,
)
from .storage import LocalFileStorage, collapse_scheme, extension_for_mime

__all__ = [
    "ArtifactMetadata",
    "EditedImageMetadata",
    "FetchedImageMetadata",
    "GeneratedImageMetadata",
    "GenerationRecord",
    "LocalFileStorage",
    "OcrMetadata",
    "ProcessedImageMetadata",
    "collapse_scheme",
    "compute_key",
    "extension_for_mime",
    "list_ai_image_records",
    "load_metadata",
    "parse_metadata",
    "save_ai_image_record",
    "save_metadata",
]
