"""IIIF manifest page download.

Reads a IIIF Presentation manifest (v2 ``sequences/canvases`` or v3
``items``), downloads each canvas image, and registers the files as
pages of a witness. Every request carries a timeout and is retried with
exponential backoff; exhaustion raises ``FetchError``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import httpx

from targum.errors import FetchError, InputValidationError
from targum.ingest.pages import page_id_for
from targum.ocr.images import safe_name
from targum.store.models import Page

if TYPE_CHECKING:
    from targum.store.repository import ManuscriptStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


@dataclass
class CanvasImage:
    label: str
    url: str
    width: int | None = None
    height: int | None = None


def _label(value: Any, fallback: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        # v3 language map: {"none": ["f. 1r"]}
        for texts in value.values():
            if texts:
                return str(texts[0])
    return fallback


def canvases_from_manifest(manifest: dict[str, Any]) -> list[CanvasImage]:
    """Canvas images in manifest order, for v2 and v3 manifests."""
    images: list[CanvasImage] = []

    for sequence in manifest.get("sequences", []):
        for idx, canvas in enumerate(sequence.get("canvases", []), start=1):
            for image in canvas.get("images", [])[:1]:
                resource = image.get("resource", {})
                url = resource.get("@id") or resource.get("id")
                if url:
                    images.append(
                        CanvasImage(
                            label=_label(canvas.get("label"), f"canvas {idx}"),
                            url=url,
                            width=canvas.get("width"),
                            height=canvas.get("height"),
                        )
                    )

    for idx, canvas in enumerate(manifest.get("items", []), start=1):
        for page in canvas.get("items", [])[:1]:
            for annotation in page.get("items", [])[:1]:
                body = annotation.get("body", {})
                url = body.get("id") or body.get("@id")
                if url:
                    images.append(
                        CanvasImage(
                            label=_label(canvas.get("label"), f"canvas {idx}"),
                            url=url,
                            width=canvas.get("width"),
                            height=canvas.get("height"),
                        )
                    )

    return images


class IiifClient:
    """Small HTTP client with bounded retry for manifests and images."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._owns_client = client is None
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "IiifClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, url: str) -> httpx.Response:
        """GET with retries on transport errors and 5xx/429 responses."""
        last_error = ""
        for attempt in range(self.max_retries + 1):
            try:
                response = self._client.get(url)
                if response.status_code < 500 and response.status_code != 429:
                    response.raise_for_status()
                    return response
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPStatusError as e:
                raise FetchError(
                    "FETCH_FAILED",
                    f"HTTP {e.response.status_code} for {url}",
                    {"url": url, "status": e.response.status_code},
                ) from e
            except httpx.RequestError as e:
                last_error = str(e) or type(e).__name__

            if attempt < self.max_retries:
                wait = self.retry_delay * (2**attempt)
                logger.warning(
                    f"Fetch failed for {url} ({last_error}), retrying in {wait:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                self._sleep(wait)

        raise FetchError(
            "FETCH_FAILED",
            f"Failed to fetch {url} after {self.max_retries + 1} attempt(s): {last_error}",
            {"url": url, "error": last_error},
        )

    def manifest(self, url: str) -> dict[str, Any]:
        response = self.get(url)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(
                "FETCH_FAILED", f"Manifest is not JSON: {url}", {"url": url}
            ) from e


def _suffix_for(url: str, content_type: str | None) -> str:
    if content_type:
        if "png" in content_type:
            return ".png"
        if "tiff" in content_type:
            return ".tif"
        if "jpeg" in content_type or "jpg" in content_type:
            return ".jpg"
    suffix = Path(url.split("?")[0]).suffix.lower()
    return suffix if suffix in {".png", ".jpg", ".jpeg", ".tif", ".tiff"} else ".jpg"


def import_iiif_manifest(
    store: "ManuscriptStore",
    witness_id: str,
    manifest_url: str,
    out_dir: Path | str,
    client: IiifClient | None = None,
    limit: int | None = None,
) -> list[Page]:
    """Download manifest canvases and register them as pages."""
    if store.get_witness(witness_id) is None:
        raise InputValidationError(
            "WITNESS_NOT_FOUND", f"Witness not found: {witness_id}", {"witness_id": witness_id}
        )
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    own_client = client is None
    client = client or IiifClient()
    try:
        canvases = canvases_from_manifest(client.manifest(manifest_url))
        if limit is not None:
            canvases = canvases[:limit]
        pages = []
        for index, canvas in enumerate(canvases, start=1):
            response = client.get(canvas.url)
            suffix = _suffix_for(canvas.url, response.headers.get("content-type"))
            path = out / f"{safe_name(witness_id)}_{index:04d}{suffix}"
            path.write_bytes(response.content)
            pages.append(
                store.upsert_page(
                    Page(
                        id=page_id_for(witness_id, index),
                        witness_id=witness_id,
                        page_index=index,
                        image_path=str(path.resolve()),
                        width=canvas.width,
                        height=canvas.height,
                    )
                )
            )
    finally:
        if own_client:
            client.close()

    logger.info(f"Imported {len(pages)} IIIF page(s) for {witness_id} from {manifest_url}")
    return pages
