"""Image cropper collaborator.

Bounding boxes arrive either in pixels or normalized to [0, 1]. A box
whose four values all fall in [0, 1] is read as normalized and scaled by
the page size; anything else is read as pixels. Non-finite or
non-positive boxes are rejected as ``INVALID_BBOX`` and boxes that leave
the page as ``BBOX_OUT_OF_BOUNDS``.
"""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from PIL import Image

from targum.errors import InputValidationError
from targum.store.models import BBox

BBOX_OUT_OF_BOUNDS_MESSAGE = "bbox exceeds source page dimensions"

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]+")


@dataclass
class NormalizedBBox:
    pixel: BBox
    normalized: BBox
    mode: str  # "normalized" | "pixel"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pixel": self.pixel.to_dict(),
            "normalized": self.normalized.to_dict(),
            "normalization_mode": self.mode,
        }


@dataclass
class CropResult:
    crop_path: str
    width: int
    height: int
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)


class ImageCropper(Protocol):
    """Crops a region out of a page image."""

    def page_size(self, page_path: Path | str) -> tuple[int, int]:
        ...

    def crop(
        self, page_path: Path | str, bbox: BBox, out_dir: Path | str, name: str
    ) -> CropResult:
        ...


def _is_normalized(bbox: BBox) -> bool:
    return all(0 <= v <= 1 for v in (bbox.x, bbox.y, bbox.w, bbox.h))


def normalize_bbox(bbox: BBox, width: int, height: int) -> NormalizedBBox:
    """Validate a bbox against a page and express it in both forms.

    Raises:
        InputValidationError: ``INVALID_BBOX`` or ``BBOX_OUT_OF_BOUNDS``
    """
    values = (bbox.x, bbox.y, bbox.w, bbox.h)
    if any(not math.isfinite(v) for v in values) or bbox.w <= 0 or bbox.h <= 0:
        raise InputValidationError(
            "INVALID_BBOX",
            "bbox must contain finite positive x/y/w/h",
            {"bbox": bbox.to_dict()},
        )

    normalized_input = _is_normalized(bbox)
    if normalized_input:
        pixel = BBox(
            x=round(bbox.x * width),
            y=round(bbox.y * height),
            w=round(bbox.w * width),
            h=round(bbox.h * height),
        )
    else:
        pixel = BBox(x=round(bbox.x), y=round(bbox.y), w=round(bbox.w), h=round(bbox.h))

    if (
        pixel.x < 0
        or pixel.y < 0
        or pixel.w <= 0
        or pixel.h <= 0
        or pixel.x + pixel.w > width
        or pixel.y + pixel.h > height
    ):
        raise InputValidationError(
            "BBOX_OUT_OF_BOUNDS",
            BBOX_OUT_OF_BOUNDS_MESSAGE,
            {
                "bbox": bbox.to_dict(),
                "page_size": {"width": width, "height": height},
                "pixel": pixel.to_dict(),
            },
        )

    return NormalizedBBox(
        pixel=pixel,
        normalized=BBox(
            x=pixel.x / width,
            y=pixel.y / height,
            w=pixel.w / width,
            h=pixel.h / height,
        ),
        mode="normalized" if normalized_input else "pixel",
    )


def clamp_bbox_to_page(bbox: BBox, width: int, height: int) -> BBox | None:
    """Pull a bbox back inside the page.

    The result is always in pixels; a normalized box is scaled first.

    Returns:
        The clamped pixel box, or None when nothing changed (or the page
        has no usable size).
    """
    if width <= 0 or height <= 0:
        return None
    if _is_normalized(bbox):
        px, py = bbox.x * width, bbox.y * height
        pw, ph = bbox.w * width, bbox.h * height
    else:
        px, py, pw, ph = bbox.x, bbox.y, bbox.w, bbox.h
    x = max(0, min(round(px), width - 1))
    y = max(0, min(round(py), height - 1))
    w = max(1, min(round(pw), width - x))
    h = max(1, min(round(ph), height - y))
    clamped = BBox(x=x, y=y, w=w, h=h)
    if clamped == bbox or clamped == BBox(
        x=round(px), y=round(py), w=round(pw), h=round(ph)
    ):
        return None
    return clamped


def safe_name(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", name)


class PillowCropper:
    """Deterministic PNG crops with Pillow.

    Multi-page documents (PDF) must be rasterized before import; they are
    rejected here as ``UNSUPPORTED_PAGE_FORMAT``.
    """

    def _open(self, page_path: Path | str) -> Image.Image:
        path = Path(page_path)
        if path.suffix.lower() == ".pdf":
            raise InputValidationError(
                "UNSUPPORTED_PAGE_FORMAT",
                "PDF pages must be rasterized before cropping",
                {"page_path": str(path)},
            )
        try:
            return Image.open(path)
        except (FileNotFoundError, OSError) as e:
            raise InputValidationError(
                "UNSUPPORTED_PAGE_FORMAT",
                f"Unable to read page image: {path}",
                {"page_path": str(path), "cause": str(e)},
            ) from e

    def page_size(self, page_path: Path | str) -> tuple[int, int]:
        with self._open(page_path) as image:
            return image.size

    def crop(
        self, page_path: Path | str, bbox: BBox, out_dir: Path | str, name: str
    ) -> CropResult:
        out = Path(out_dir)
        out.mkdir(parents=True, exist_ok=True)
        crop_path = out / f"{safe_name(name)}.png"

        with self._open(page_path) as image:
            width, height = image.size
            if not width or not height:
                raise InputValidationError(
                    "UNSUPPORTED_PAGE_FORMAT",
                    "Unable to read image metadata for crop",
                    {"page_path": str(page_path)},
                )
            box = normalize_bbox(bbox, width, height)
            region = image.crop(
                (
                    int(box.pixel.x),
                    int(box.pixel.y),
                    int(box.pixel.x + box.pixel.w),
                    int(box.pixel.y + box.pixel.h),
                )
            )
            region.save(crop_path, format="PNG", optimize=True)

        sha256 = hashlib.sha256(crop_path.read_bytes()).hexdigest()
        return CropResult(
            crop_path=str(crop_path),
            width=int(box.pixel.w),
            height=int(box.pixel.h),
            content_hash=sha256,
            metadata={
                "source": {
                    "page_path": str(page_path),
                    "width": width,
                    "height": height,
                },
                "bbox": {"requested": bbox.to_dict(), **box.to_dict()},
                "output": {
                    "format": "png",
                    "width": int(box.pixel.w),
                    "height": int(box.pixel.h),
                    "sha256": sha256,
                },
            },
        )
