"""OCR collaborators: engine executors and the page image cropper."""

from targum.ocr.executor import (
    CommandJsonExecutor,
    OcrConfig,
    OcrExecutor,
    OcrResult,
    TesseractExecutor,
    build_executor,
    parse_tesseract_tsv,
    run_ocr_with_retry,
)
from targum.ocr.images import (
    CropResult,
    ImageCropper,
    NormalizedBBox,
    PillowCropper,
    clamp_bbox_to_page,
    normalize_bbox,
)

__all__ = [
    "CommandJsonExecutor",
    "CropResult",
    "ImageCropper",
    "NormalizedBBox",
    "OcrConfig",
    "OcrExecutor",
    "OcrResult",
    "PillowCropper",
    "TesseractExecutor",
    "build_executor",
    "clamp_bbox_to_page",
    "normalize_bbox",
    "parse_tesseract_tsv",
    "run_ocr_with_retry",
]
