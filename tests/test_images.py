"""Tests for bbox validation and Pillow cropping."""

import pytest
from PIL import Image

from targum.errors import InputValidationError
from targum.ocr.images import PillowCropper, clamp_bbox_to_page, normalize_bbox, safe_name
from targum.store import BBox


@pytest.fixture
def page_image(tmp_path):
    path = tmp_path / "page.png"
    Image.new("RGB", (100, 200), "white").save(path)
    return path


class TestNormalizeBBox:
    def test_pixel_box(self):
        box = normalize_bbox(BBox(10, 20, 30, 40), 100, 200)
        assert box.mode == "pixel"
        assert box.pixel == BBox(10, 20, 30, 40)
        assert box.normalized == BBox(0.1, 0.1, 0.3, 0.2)

    def test_normalized_box_is_scaled(self):
        box = normalize_bbox(BBox(0.5, 0.5, 0.25, 0.25), 100, 200)
        assert box.mode == "normalized"
        assert box.pixel == BBox(50, 100, 25, 50)

    @pytest.mark.parametrize(
        "bbox", [BBox(0, 0, 0, 10), BBox(0, 0, 10, -1), BBox(float("inf"), 0, 10, 10)]
    )
    def test_invalid(self, bbox):
        with pytest.raises(InputValidationError) as exc_info:
            normalize_bbox(bbox, 100, 200)
        assert exc_info.value.code == "INVALID_BBOX"

    def test_out_of_bounds(self):
        with pytest.raises(InputValidationError) as exc_info:
            normalize_bbox(BBox(90, 0, 20, 10), 100, 200)
        assert exc_info.value.code == "BBOX_OUT_OF_BOUNDS"
        assert exc_info.value.details["page_size"] == {"width": 100, "height": 200}


class TestClamp:
    def test_clamps_to_page(self):
        assert clamp_bbox_to_page(BBox(90, 190, 20, 20), 100, 200) == BBox(90, 190, 10, 10)

    def test_negative_origin(self):
        assert clamp_bbox_to_page(BBox(-5, -5, 20, 20), 100, 200) == BBox(0, 0, 20, 20)

    def test_inside_returns_none(self):
        assert clamp_bbox_to_page(BBox(10, 10, 20, 20), 100, 200) is None

    def test_unknown_page_size(self):
        assert clamp_bbox_to_page(BBox(10, 10, 20, 20), 0, 0) is None


class TestPillowCropper:
    def test_crop_writes_png(self, page_image, tmp_path):
        result = PillowCropper().crop(page_image, BBox(10, 20, 30, 40), tmp_path / "crops", "r 1")
        assert result.crop_path.endswith("r_1.png")
        assert (result.width, result.height) == (30, 40)
        with Image.open(result.crop_path) as crop:
            assert crop.size == (30, 40)
        assert result.metadata["source"]["width"] == 100
        assert result.metadata["bbox"]["normalization_mode"] == "pixel"
        assert len(result.content_hash) == 64

    def test_crop_is_deterministic(self, page_image, tmp_path):
        cropper = PillowCropper()
        first = cropper.crop(page_image, BBox(0, 0, 50, 50), tmp_path, "a")
        second = cropper.crop(page_image, BBox(0, 0, 50, 50), tmp_path, "a")
        assert first.content_hash == second.content_hash

    def test_page_size(self, page_image):
        assert PillowCropper().page_size(page_image) == (100, 200)

    def test_out_of_bounds(self, page_image, tmp_path):
        with pytest.raises(InputValidationError) as exc_info:
            PillowCropper().crop(page_image, BBox(50, 50, 100, 10), tmp_path, "x")
        assert exc_info.value.code == "BBOX_OUT_OF_BOUNDS"

    def test_pdf_rejected(self, tmp_path):
        pdf = tmp_path / "page.pdf"
        pdf.write_bytes(b"%PDF-1.4")
        with pytest.raises(InputValidationError) as exc_info:
            PillowCropper().page_size(pdf)
        assert exc_info.value.code == "UNSUPPORTED_PAGE_FORMAT"

    def test_missing_file(self, tmp_path):
        with pytest.raises(InputValidationError):
            PillowCropper().page_size(tmp_path / "missing.png")

    def test_safe_name(self):
        assert safe_name("w1:p0001/region 3") == "w1_p0001_region_3"
