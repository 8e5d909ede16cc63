"""Map adapter output onto the canonical alert shape."""

from __future__ import annotations

import copy
from typing import Any, Dict

from .errors import NormalizationError
from .models import CanonicalAlert, RawItem, SourceDescriptor
from .parser_utils import collapse_whitespace, html_to_text, parse_date, title_key, truncate_text

TITLE_MAX_LENGTH = 500
SUMMARY_MAX_LENGTH = 4000


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        value = " ".join(str(part) for part in value if part)
    return html_to_text(str(value))


def normalize(descriptor: SourceDescriptor, raw_item: RawItem) -> CanonicalAlert:
    """Build a :class:`CanonicalAlert` from ``raw_item``.

    Only a missing title is fatal. An unreadable publication date falls back
    to ``raw_item.fetched_at`` and is recorded under ``raw_payload["_audit"]``.
    The result depends only on the inputs.
    """
    fields = raw_item.fields
    title = truncate_text(_as_text(fields.title), TITLE_MAX_LENGTH)
    if not title:
        raise NormalizationError(f"{descriptor.name} item has no title")

    raw_payload: Dict[str, Any] = copy.deepcopy(raw_item.payload) if raw_item.payload else {}
    published_at = parse_date(fields.published, descriptor.date_formats)
    if published_at is None:
        published_at = raw_item.fetched_at
        raw_payload["_audit"] = {
            "published_at_fallback": True,
            "original_value": None if fields.published is None else str(fields.published),
        }

    external_id = collapse_whitespace(str(fields.external_id)) if fields.external_id is not None else ""
    url = collapse_whitespace(fields.url) if fields.url else ""

    return CanonicalAlert(
        source_name=descriptor.name,
        external_id=external_id or None,
        title=title,
        summary=truncate_text(_as_text(fields.summary), SUMMARY_MAX_LENGTH),
        agency=collapse_whitespace(fields.agency) or descriptor.agency,
        published_at=published_at,
        external_url=url or None,
        raw_payload=raw_payload,
        title_key=title_key(title),
    )

