"""Value objects exchanged between the upload pipeline and its collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png"})

_PIL_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
}


class Phase(str, Enum):
    """Progress phases visible to observers."""

    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class UploadItem:
    """A local image selected by the user."""

    uri: str
    mime_type: str | None = None
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or Path(self.uri).name

    def resolve_mime_type(self) -> str | None:
        """Return the declared MIME type, or sniff it from the file content."""

        if self.mime_type:
            return self.mime_type.strip().lower()
        try:
            with Image.open(self.uri) as img:
                return _PIL_FORMAT_TO_MIME.get(img.format or "")
        except (OSError, ValueError, UnidentifiedImageError, Image.DecompressionBombError) as exc:
            logger.warning("Could not sniff image type of %s: %s", self.uri, exc)
            return None

    def read_bytes(self) -> bytes:
        return Path(self.uri).read_bytes()


@dataclass(slots=True, frozen=True)
class UploadedAsset:
    """Download URL for an uploaded image, keyed to its batch position."""

    index: int
    url: str


@dataclass(slots=True, frozen=True)
class UploadFailure:
    """An item that never reached object storage."""

    index: int
    name: str
    reason: str


@dataclass(slots=True)
class UploadBatchResult:
    """Stage A accumulator: successful uploads plus recorded failures."""

    uploaded: list[UploadedAsset] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)

    @property
    def urls(self) -> list[str]:
        return [asset.url for asset in sorted(self.uploaded, key=lambda asset: asset.index)]

    @property
    def attempted(self) -> int:
        return len(self.uploaded) + len(self.failed)


@dataclass(slots=True, frozen=True)
class RejectedAsset:
    """Asset the automatic classifier could not categorise."""

    url: str
    reason: str = ""


@dataclass(slots=True, frozen=True)
class ClassificationOutcome:
    """Result of automatic classification.

    An empty ``rejected`` tuple means every submitted asset was accepted.
    """

    item_ids: tuple[int, ...] = ()
    accepted_count: int = 0
    rejected: tuple[RejectedAsset, ...] = ()

    @property
    def fully_accepted(self) -> bool:
        return not self.rejected

    @property
    def rejected_urls(self) -> list[str]:
        return [asset.url for asset in self.rejected]


@dataclass(slots=True, frozen=True)
class ManualAssignment:
    """User-chosen category for an asset the classifier rejected."""

    url: str
    category_id: int


@dataclass(slots=True, frozen=True)
class PipelineProgress:
    """Single source of truth for progress displays."""

    phase: Phase = Phase.UPLOADING
    current: int = 0
    total: int = 0
    message: str = ""


def plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def needs(count: int) -> str:
    return "needs" if count == 1 else "need"
