"""Evidence reference handling.

Files are uploaded elsewhere (object storage); the engine only records the
locator the uploader hands back, together with the declared media type and
size.  Contents are never fetched or inspected.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from marketplace_disputes.config import DisputeSettings
from marketplace_disputes.errors import ValidationError
from marketplace_disputes.schemas import EvidenceInput, EvidenceReference

logger = logging.getLogger(__name__)


def _media_type_allowed(media_type: str, allowed: Sequence[str]) -> bool:
    media_type = media_type.strip().lower()
    for pattern in allowed:
        if pattern.endswith("/*"):
            if media_type.startswith(pattern[:-1]):
                return True
        elif media_type == pattern:
            return True
    return False


def validate_submission(
    items: Sequence[EvidenceInput],
    *,
    max_items: int,
    settings: DisputeSettings,
) -> None:
    """Check one submission of evidence against the policy caps.

    Raises ValidationError describing the first offending item.
    """
    if len(items) > max_items:
        raise ValidationError(f"Maximum {max_items} evidence files allowed per submission")

    for item in items:
        if not item.locator.strip():
            raise ValidationError("Evidence locator must not be empty")
        if item.size_bytes > settings.max_evidence_bytes:
            limit_mb = settings.max_evidence_bytes / (1024 * 1024)
            raise ValidationError(f"Each evidence file must be less than {limit_mb:g} MB")
        if not _media_type_allowed(item.media_type, settings.evidence_media_types):
            raise ValidationError(f"Evidence media type not accepted: {item.media_type!r}")


def record_references(
    items: Sequence[EvidenceInput],
    *,
    uploaded_by: str,
    uploaded_at: datetime,
) -> list[EvidenceReference]:
    """Turn validated inputs into immutable references owned by a dispute."""
    refs = [
        EvidenceReference(
            locator=item.locator.strip(),
            media_type=item.media_type.strip().lower(),
            size_bytes=item.size_bytes,
            uploaded_by=uploaded_by,
            uploaded_at=uploaded_at,
        )
        for item in items
    ]
    if refs:
        logger.debug("Recorded %d evidence reference(s) from %s", len(refs), uploaded_by)
    return refs
