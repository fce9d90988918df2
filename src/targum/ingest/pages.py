"""Import page images for a witness from a directory."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import Image, UnidentifiedImageError

from targum.errors import InputValidationError
from targum.store.models import Page

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".webp"}

_DIGITS_RE = re.compile(r"(\d+)")


def natural_key(name: str) -> list:
    """Sort key treating digit runs as numbers (page2 < page10)."""
    return [int(part) if part.isdigit() else part.lower() for part in _DIGITS_RE.split(name)]


def page_id_for(witness_id: str, page_index: int) -> str:
    return f"{witness_id}:p{page_index:04d}"


def image_size(path: Path) -> tuple[int | None, int | None]:
    try:
        with Image.open(path) as image:
            return image.size
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Could not read image size for {path}: {e}")
        return None, None


def import_page_directory(
    store: "ManuscriptStore", witness_id: str, directory: Path | str, start_index: int = 1
) -> list[Page]:
    """Register every image in ``directory`` as a page, in natural order.

    Raises:
        InputValidationError: unknown witness or missing directory
    """
    if store.get_witness(witness_id) is None:
        raise InputValidationError(
            "WITNESS_NOT_FOUND", f"Witness not found: {witness_id}", {"witness_id": witness_id}
        )
    directory = Path(directory)
    if not directory.is_dir():
        raise InputValidationError(
            "PAGE_NOT_FOUND", f"Not a directory: {directory}", {"path": str(directory)}
        )

    files = sorted(
        (p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES),
        key=lambda p: natural_key(p.name),
    )
    pages = []
    for offset, path in enumerate(files):
        index = start_index + offset
        width, height = image_size(path)
        pages.append(
            store.upsert_page(
                Page(
                    id=page_id_for(witness_id, index),
                    witness_id=witness_id,
                    page_index=index,
                    image_path=str(path.resolve()),
                    width=width,
                    height=height,
                    status="ok" if width else "unreadable",
                )
            )
        )
    logger.info(f"Imported {len(pages)} page(s) for {witness_id} from {directory}")
    return pages
