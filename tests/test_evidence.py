"""Tests for evidence reference validation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as ModelError

from marketplace_disputes.config import DisputeSettings
from marketplace_disputes.errors import ValidationError
from marketplace_disputes.evidence import record_references, validate_submission
from marketplace_disputes.schemas import EvidenceInput


def _item(media_type="image/png", size=1024, locator="s3://evidence/a.png"):
    return EvidenceInput(locator=locator, media_type=media_type, size_bytes=size)


@pytest.fixture
def policy():
    return DisputeSettings()


class TestValidateSubmission:
    @pytest.mark.parametrize("media_type", ["image/png", "IMAGE/JPEG", "video/mp4", "application/pdf"])
    def test_accepted_media_types(self, policy, media_type):
        validate_submission([_item(media_type=media_type)], max_items=5, settings=policy)

    @pytest.mark.parametrize("media_type", ["text/html", "application/zip", "imagepng"])
    def test_rejected_media_types(self, policy, media_type):
        with pytest.raises(ValidationError, match="media type"):
            validate_submission([_item(media_type=media_type)], max_items=5, settings=policy)

    def test_size_cap_is_inclusive(self, policy):
        validate_submission([_item(size=10 * 1024 * 1024)], max_items=5, settings=policy)
        with pytest.raises(ValidationError, match="10 MB"):
            validate_submission([_item(size=10 * 1024 * 1024 + 1)], max_items=5, settings=policy)

    def test_count_cap(self, policy):
        validate_submission([_item()] * 3, max_items=3, settings=policy)
        with pytest.raises(ValidationError, match="Maximum 3"):
            validate_submission([_item()] * 4, max_items=3, settings=policy)

    def test_blank_locator(self, policy):
        with pytest.raises(ValidationError, match="locator"):
            validate_submission([_item(locator="  ")], max_items=5, settings=policy)

    def test_custom_media_policy(self):
        pdf_only = DisputeSettings(evidence_media_types=("application/pdf",))
        with pytest.raises(ValidationError):
            validate_submission([_item(media_type="image/png")], max_items=5, settings=pdf_only)


class TestRecordReferences:
    def test_records_uploader_and_time(self):
        at = datetime(2026, 1, 5, tzinfo=timezone.utc)
        [ref] = record_references(
            [_item(media_type=" Image/PNG ", locator=" s3://evidence/b.png ")],
            uploaded_by="buyer-1",
            uploaded_at=at,
        )
        assert ref.locator == "s3://evidence/b.png"
        assert ref.media_type == "image/png"
        assert ref.uploaded_by == "buyer-1"
        assert ref.uploaded_at == at
        assert ref.reference_id

    def test_references_are_immutable(self):
        [ref] = record_references(
            [_item()], uploaded_by="buyer-1", uploaded_at=datetime.now(timezone.utc)
        )
        with pytest.raises(ModelError):
            ref.locator = "s3://evidence/other.png"
