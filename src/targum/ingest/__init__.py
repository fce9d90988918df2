"""Ingest: witness catalog, baseline text, page images, IIIF downloads."""

from targum.ingest.baseline import load_baseline, parse_baseline_lines
from targum.ingest.catalog import install_catalog, load_catalog, parse_catalog
from targum.ingest.iiif import IiifClient, canvases_from_manifest, import_iiif_manifest
from targum.ingest.pages import import_page_directory, page_id_for

__all__ = [
    "IiifClient",
    "canvases_from_manifest",
    "import_iiif_manifest",
    "import_page_directory",
    "install_catalog",
    "load_baseline",
    "load_catalog",
    "page_id_for",
    "parse_baseline_lines",
    "parse_catalog",
]
