"""Regulatory monitor package namespace."""

from importlib import import_module
from typing import Any, List

__version__ = "1.0.0"

__all__ = [
    "AlertStore",
    "MonitorConfig",
    "SyncOrchestrator",
    "HealthTracker",
    "SyncMode",
    "create_app",
]


def __getattr__(name: str) -> Any:
    if name == "AlertStore":
        module = import_module("regulatory_monitor.storage")
        return getattr(module, name)
    elif name == "MonitorConfig":
        module = import_module("regulatory_monitor.config")
        return getattr(module, name)
    elif name == "SyncOrchestrator":
        module = import_module("regulatory_monitor.orchestrator")
        return getattr(module, name)
    elif name == "HealthTracker":
        module = import_module("regulatory_monitor.health")
        return getattr(module, name)
    elif name == "SyncMode":
        module = import_module("regulatory_monitor.models")
        return getattr(module, name)
    elif name == "create_app":
        module = import_module("regulatory_monitor.api")
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> List[str]:
    return sorted(__all__)
