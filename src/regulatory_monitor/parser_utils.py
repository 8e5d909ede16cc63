"""Parsing utilities shared by adapters and the normalizer."""

from __future__ import annotations

import re
import time
import unicodedata
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, List, Optional, Sequence, Union

from bs4 import BeautifulSoup
from dateutil import parser as date_parser
from dateutil import tz

ELLIPSIS = "…"

_WHITESPACE_RE = re.compile(r"\s+")
_TITLE_KEY_STRIP_RE = re.compile(r"[^\w\s]|_")
_MARKUP_HINT_RE = re.compile(r"<[a-zA-Z/!]|&[#a-zA-Z0-9]+;")


def collapse_whitespace(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip()


def html_to_text(value: Optional[str]) -> str:
    """Strip markup and decode entities, returning single-spaced plain text."""
    if not value:
        return ""
    text = str(value)
    if _MARKUP_HINT_RE.search(text):
        soup = BeautifulSoup(text, "lxml")
        for tag in soup(["script", "style"]):
            tag.decompose()
        text = soup.get_text(" ")
    return collapse_whitespace(text)


def truncate_text(value: str, limit: int) -> str:
    """Cut ``value`` to at most ``limit`` characters, ending in an ellipsis."""
    if limit <= 0 or len(value) <= limit:
        return value
    return value[: limit - 1].rstrip() + ELLIPSIS


def title_key(title: Optional[str]) -> str:
    """Normalized title used as the fallback dedup key.

    Case, punctuation, dash variants and whitespace runs do not affect the key,
    so ``"Recall - Ground Beef"`` and ``"recall — ground beef"`` collide.
    """
    if not title:
        return ""
    text = unicodedata.normalize("NFKC", title).casefold()
    text = _TITLE_KEY_STRIP_RE.sub(" ", text)
    return collapse_whitespace(text)


def ensure_utc(value: datetime, *, default_timezone: Union[str, tz.tzfile, None] = "UTC") -> datetime:
    """Attach ``default_timezone`` to naive datetimes and convert to UTC."""
    if value.tzinfo is None:
        tzinfo = tz.gettz(default_timezone) if isinstance(default_timezone, str) else default_timezone
        value = value.replace(tzinfo=tzinfo or timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value: Any, formats: Sequence[str] = ()) -> Optional[datetime]:
    """Parse a native date value into an aware UTC datetime.

    Tries the source's own ``strptime`` formats first, then RFC 2822, then
    dateutil's generic parser. Returns ``None`` when nothing matches.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, time.struct_time):
        return datetime(*value[:6], tzinfo=timezone.utc)

    text = collapse_whitespace(str(value))
    if not text:
        return None

    for fmt in formats:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    try:
        rfc2822 = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        rfc2822 = None
    if rfc2822 is not None:
        return ensure_utc(rfc2822)

    try:
        return ensure_utc(date_parser.parse(text))
    except (ValueError, OverflowError):
        return None


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as ISO 8601 UTC with a ``Z`` suffix, second precision."""
    if value is None:
        return None
    iso = ensure_utc(value).replace(microsecond=0).isoformat()
    if iso.endswith("+00:00"):
        iso = iso[:-6] + "Z"
    return iso


def parse_isoformat(value: Optional[str]) -> Optional[datetime]:
    """Inverse of :func:`isoformat_utc` for values read back from storage."""
    if not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    return ensure_utc(datetime.fromisoformat(text))


def ensure_list(value: Optional[Union[str, Iterable[Any]]]) -> List[str]:
    """Ensure input is a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def first_present(mapping: Any, *keys: str) -> Optional[Any]:
    """Return the first non-empty value among ``keys`` in a mapping."""
    for key in keys:
        candidate = mapping.get(key) if hasattr(mapping, "get") else None
        if candidate not in (None, ""):
            return candidate
    return None
