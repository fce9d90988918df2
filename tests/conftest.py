"""Shared fixtures: a temporary store, settings, and fake OCR collaborators."""

from pathlib import Path

import pytest

from targum.config import Settings
from targum.errors import InputValidationError
from targum.ocr.executor import OcrResult
from targum.ocr.images import BBOX_OUT_OF_BOUNDS_MESSAGE, CropResult
from targum.store import BBox, ManuscriptStore, OcrArtifact, Page, RegionStatus, Witness


@pytest.fixture
def settings(tmp_path):
    s = Settings()
    s.db_path = tmp_path / "targum.db"
    s.data_dir = tmp_path / "data"
    s.ocr_workers = 2
    s.ocr_backoff_seconds = 0.0
    return s


@pytest.fixture
def store(settings):
    s = ManuscriptStore.open(settings)
    yield s
    s.close()


class FakeExecutor:
    """OCR executor returning canned text, or raising queued errors first."""

    def __init__(self, text="טקסט", mean_confidence=0.9, coverage=0.8, errors=None):
        self.text = text
        self.mean_confidence = mean_confidence
        self.coverage = coverage
        self.errors = list(errors or [])
        self.calls = []

    def run(self, image_path):
        self.calls.append(str(image_path))
        if self.errors:
            raise self.errors.pop(0)
        return OcrResult(
            text_raw=self.text,
            mean_confidence=self.mean_confidence,
            coverage_estimate=self.coverage,
            char_count=len(self.text),
            engine="fake",
        )


class FakeCropper:
    """Cropper that validates pixel boxes against a fixed page size."""

    def __init__(self, width=1000, height=1500):
        self.width = width
        self.height = height
        self.crops = []

    def page_size(self, page_path):
        return self.width, self.height

    def crop(self, page_path, bbox, out_dir, name):
        if bbox.x + bbox.w > self.width or bbox.y + bbox.h > self.height:
            raise InputValidationError("BBOX_OUT_OF_BOUNDS", BBOX_OUT_OF_BOUNDS_MESSAGE)
        self.crops.append((str(page_path), bbox))
        return CropResult(
            crop_path=str(Path(out_dir) / f"{name}.png"),
            width=int(bbox.w),
            height=int(bbox.h),
            content_hash="0" * 64,
            metadata={"bbox": bbox.to_dict()},
        )


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def make_executor():
    return FakeExecutor


@pytest.fixture
def fake_cropper():
    return FakeCropper()


class Seeder:
    """Builds witnesses, pages, regions and OCR artifacts in a store."""

    def __init__(self, store: ManuscriptStore):
        self.store = store
        self._page_counter = 0

    def baseline(self, verses: dict[str, str]) -> None:
        for verse_id, text in verses.items():
            self.store.upsert_verse(verse_id, text)

    def witness(self, witness_id, priority=None, authority=0.8, name=None):
        return self.store.upsert_witness(
            Witness(
                id=witness_id,
                name=name or witness_id,
                authority_weight=authority,
                priority=priority,
            )
        )

    def page(self, witness_id, image_path="page.png", width=1000, height=1500):
        self._page_counter += 1
        return self.store.upsert_page(
            Page(
                id=f"{witness_id}:p{self._page_counter:04d}",
                witness_id=witness_id,
                page_index=self._page_counter,
                image_path=str(image_path),
                width=width,
                height=height,
            )
        )

    def region(
        self,
        witness_id,
        start="Genesis:1:1",
        end="Genesis:1:1",
        bbox=None,
        status=RegionStatus.OK,
    ):
        page = self.page(witness_id)
        return self.store.create_region(
            page.id,
            bbox or BBox(x=10, y=10, w=200, h=100),
            start,
            end,
            status=status,
        )

    def artifact(self, region_id, text, conf=0.9, coverage=0.9):
        return self.store.upsert_ocr_artifact(
            OcrArtifact(
                region_id=region_id,
                text_raw=text,
                ocr_mean_conf=conf,
                ocr_char_count=len(text),
                coverage_ratio_est=coverage,
                engine="fake",
            )
        )


@pytest.fixture
def seed(store):
    return Seeder(store)
