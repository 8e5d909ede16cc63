"""Deterministic duplicate resolution for candidate alerts.

Rules, per source only:

* with an external id, the pair ``(source_name, external_id)`` is the key; a
  match refreshes the stored summary and raw payload.
* without one, an alert of the same source whose normalized title is
  identical and whose publication date is within two days is the same alert;
  the candidate is skipped. When the candidate's date is only the fetch
  time, the title alone decides.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .logging_config import get_logger
from .models import CanonicalAlert, Resolution, ResolutionAction
from .storage import AlertStore

logger = get_logger("deduplicator")

DUPLICATE_WINDOW = timedelta(days=2)


class Deduplicator:
    """One session per source pipeline run.

    The session remembers what it already resolved so a record repeated
    inside the same fetch resolves against the earlier copy instead of the
    store.
    """

    def __init__(self, store: AlertStore, *, window: timedelta = DUPLICATE_WINDOW) -> None:
        self.store = store
        self.window = window
        self._by_external_id: Dict[Tuple[str, str], Resolution] = {}
        self._by_title_key: Dict[Tuple[str, str], List[Resolution]] = {}

    def resolve(self, candidate: CanonicalAlert) -> Resolution:
        if candidate.external_id:
            return self._resolve_by_external_id(candidate)
        return self._resolve_by_title(candidate)

    def resolve_all(self, candidates: Iterable[CanonicalAlert]) -> List[Resolution]:
        return [self.resolve(candidate) for candidate in candidates]

    def _resolve_by_external_id(self, candidate: CanonicalAlert) -> Resolution:
        key = (candidate.source_name, candidate.external_id or "")
        pending = self._by_external_id.get(key)
        if pending is not None:
            # repeat within the batch: the later copy's content wins
            pending.candidate.summary = candidate.summary
            pending.candidate.raw_payload = candidate.raw_payload
            logger.debug("Folded repeated %s %s into pending %s", key[0], key[1], pending.action.value)
            return Resolution(ResolutionAction.SKIP_DUPLICATE, candidate, existing_id=pending.existing_id)

        existing_id = self.store.find_by_external_id(candidate.source_name, candidate.external_id or "")
        if existing_id is not None:
            resolution = Resolution(ResolutionAction.UPDATE_EXISTING, candidate, existing_id=existing_id)
        else:
            resolution = Resolution(ResolutionAction.INSERT, candidate)
        self._by_external_id[key] = resolution
        return resolution

    def _resolve_by_title(self, candidate: CanonicalAlert) -> Resolution:
        key = (candidate.source_name, candidate.title_key)
        # stand-in dates move with every fetch
        window = None if candidate.published_at_is_fallback else self.window
        for pending in self._by_title_key.get(key, []):
            if window is None or abs(pending.candidate.published_at - candidate.published_at) <= window:
                return Resolution(ResolutionAction.SKIP_DUPLICATE, candidate, existing_id=pending.existing_id)

        existing_id: Optional[int] = self.store.find_by_title_key(
            candidate.source_name,
            candidate.title_key,
            candidate.published_at,
            window,
        )
        if existing_id is not None:
            return Resolution(ResolutionAction.SKIP_DUPLICATE, candidate, existing_id=existing_id)

        resolution = Resolution(ResolutionAction.INSERT, candidate)
        self._by_title_key.setdefault(key, []).append(resolution)
        return resolution
