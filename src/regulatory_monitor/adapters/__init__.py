"""Source adapters for the regulatory monitor."""

from .base import ADAPTER_REGISTRY, SourceAdapter, register_adapter
from .cdc import CDCFoodSafetyAdapter
from .epa import EPAEchoAdapter
from .fda import OpenFDAEnforcementAdapter
from .federal_register import FederalRegisterAdapter
from .fsis import FSISRecallAdapter
from .registry import build_adapter
from .regulations_gov import RegulationsGovAdapter
from .rss_feed import RSSFeedAdapter

__all__ = [
    "ADAPTER_REGISTRY",
    "SourceAdapter",
    "register_adapter",
    "build_adapter",
    "CDCFoodSafetyAdapter",
    "EPAEchoAdapter",
    "OpenFDAEnforcementAdapter",
    "FederalRegisterAdapter",
    "FSISRecallAdapter",
    "RegulationsGovAdapter",
    "RSSFeedAdapter",
]
