"""Static adapter registry: adapter name -> adapter class."""

from __future__ import annotations

from typing import Mapping, Optional

from ..errors import ConfigurationError
from ..http_client import HTTPClient
from ..models import SourceDescriptor
from . import cdc, epa, fda, federal_register, fsis, regulations_gov, rss_feed  # noqa: F401
from .base import ADAPTER_REGISTRY, SourceAdapter


def build_adapter(
    descriptor: SourceDescriptor,
    http_client: Optional[HTTPClient] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> SourceAdapter:
    """Instantiate the adapter registered for ``descriptor.adapter``."""
    adapter_cls = ADAPTER_REGISTRY.get(descriptor.adapter)
    if adapter_cls is None:
        raise ConfigurationError(
            f"Unknown adapter {descriptor.adapter!r} for source {descriptor.name!r}. "
            f"Available: {', '.join(sorted(ADAPTER_REGISTRY))}"
        )
    return adapter_cls(descriptor, http_client, environ=environ)


__all__ = ["ADAPTER_REGISTRY", "build_adapter"]
