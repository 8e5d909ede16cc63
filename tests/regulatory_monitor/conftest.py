"""Shared fixtures for the regulatory monitor tests."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from regulatory_monitor.http_client import HTTPClient
from regulatory_monitor.logging_config import ROOT_LOGGER_NAME
from regulatory_monitor.models import ItemFields, RawItem, SourceDescriptor
from regulatory_monitor.storage import AlertStore

FIXTURES = Path(__file__).parent / "fixtures"
FETCHED_AT = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_package_logger():
    """setup_logging detaches the package logger; put it back after each test."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def fixture_text():
    def load(name: str) -> str:
        return (FIXTURES / name).read_text(encoding="utf-8")

    return load


@pytest.fixture
def store(tmp_path):
    return AlertStore(tmp_path / "regulatory_monitor.db")


@pytest.fixture
def make_descriptor():
    def factory(name: str = "FDA", adapter: str = "openfda_enforcement", **overrides: Any) -> SourceDescriptor:
        values: Dict[str, Any] = {
            "name": name,
            "adapter": adapter,
            "endpoints": (f"https://example.test/{name.lower().replace(' ', '-')}",),
            "agency": name,
        }
        values.update(overrides)
        return SourceDescriptor(**values)

    return factory


@pytest.fixture
def mock_http():
    """Build an HTTPClient whose requests are answered by ``handler``."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> HTTPClient:
        return HTTPClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def raw_item():
    def factory(
        source_name: str = "FDA",
        *,
        title: Optional[str] = "Organic Baby Spinach",
        summary: Optional[str] = "Potential Listeria contamination.",
        published: Any = "20250110",
        external_id: Optional[str] = "RECALL-001",
        url: Optional[str] = "https://example.test/recall",
        payload: Optional[Dict[str, Any]] = None,
        fetched_at: datetime = FETCHED_AT,
    ) -> RawItem:
        return RawItem(
            source_name=source_name,
            payload=payload if payload is not None else {"id": external_id, "title": title},
            fields=ItemFields(
                title=title,
                summary=summary,
                published=published,
                url=url,
                external_id=external_id,
            ),
            fetched_at=fetched_at,
        )

    return factory


class FakeAdapter:
    """Adapter stand-in returning scripted results, one per call."""

    def __init__(self, *results: Any) -> None:
        self.results: List[Any] = list(results)
        self.calls: List[Dict[str, Any]] = []

    async def fetch(self, since, *, limit):
        self.calls.append({"since": since, "limit": limit})
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return await result()
        return list(result)


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def noop_sleep():
    delays: List[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    sleep.delays = delays
    return sleep
