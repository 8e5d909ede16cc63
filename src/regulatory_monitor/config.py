"""Configuration loading: YAML source descriptors plus environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .adapters.registry import ADAPTER_REGISTRY
from .errors import ConfigurationError
from .logging_config import get_logger
from .models import SourceDescriptor

logger = get_logger("config")

FDA_ENFORCEMENT_ENDPOINTS = [
    "https://api.fda.gov/food/enforcement.json",
    "https://api.fda.gov/drug/enforcement.json",
    "https://api.fda.gov/device/enforcement.json",
]

DEFAULT_SOURCES: Dict[str, Dict[str, Any]] = {
    "FDA": {
        "adapter": "openfda_enforcement",
        "agency": "FDA",
        "endpoints": FDA_ENFORCEMENT_ENDPOINTS,
        "payload_format": "json",
        "freshness_threshold_hours": 24,
        "priority": 4,
        "date_formats": ["%Y%m%d"],
        "rate_limit_per_minute": 40,
        "rate_limit_per_hour": 1000,
        "credential_env": "FDA_API_KEY",
    },
    "FSIS": {
        "adapter": "fsis_rss",
        "agency": "USDA-FSIS",
        "endpoints": ["https://www.fsis.usda.gov/fsis-content/rss/recalls.xml"],
        "payload_format": "rss",
        "freshness_threshold_hours": 12,
        "priority": 4,
        "date_formats": ["%a, %m/%d/%Y - %H:%M", "%m/%d/%Y - %H:%M", "%m/%d/%Y"],
        "rate_limit_per_minute": 10,
        "rate_limit_per_hour": 120,
    },
    "EPA": {
        "adapter": "epa_echo",
        "agency": "EPA",
        "endpoints": ["https://echo.epa.gov/tools/web-services/enforcement-case-results.json"],
        "payload_format": "json",
        "freshness_threshold_hours": 48,
        "priority": 3,
        "date_formats": ["%m/%d/%Y", "%Y-%m-%d"],
        "rate_limit_per_minute": 10,
        "rate_limit_per_hour": 200,
    },
    "CDC": {
        "adapter": "cdc_rss",
        "agency": "CDC",
        "endpoints": ["http://www2c.cdc.gov/podcasts/createrss.asp?c=146"],
        "payload_format": "rss",
        "freshness_threshold_hours": 72,
        "priority": 3,
        "rate_limit_per_minute": 10,
        "rate_limit_per_hour": 120,
    },
    "Federal Register": {
        "adapter": "federal_register",
        "agency": "Federal Register",
        "endpoints": ["https://www.federalregister.gov/api/v1/documents.json"],
        "payload_format": "json",
        "freshness_threshold_hours": 48,
        "priority": 2,
        "date_formats": ["%Y-%m-%d"],
        "rate_limit_per_minute": 30,
        "rate_limit_per_hour": 1000,
        "params": {
            "agencies": [
                "food-and-drug-administration",
                "food-safety-and-inspection-service",
                "environmental-protection-agency",
            ],
            "per_page": 100,
        },
    },
    "Regulations.gov": {
        "adapter": "regulations_gov",
        "agency": "Regulations.gov",
        "endpoints": ["https://api.regulations.gov/v4/documents"],
        "payload_format": "json",
        "freshness_threshold_hours": 72,
        "priority": 2,
        "rate_limit_per_minute": 20,
        "rate_limit_per_hour": 500,
        "credential_env": "REGULATIONS_GOV_API_KEY",
        "params": {"agency_ids": ["FDA", "EPA", "FSIS"], "page_size": 100},
    },
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "database_path": "data/regulatory_monitor.db",
    "max_concurrency": 4,
    "run_timeout_seconds": 300,
    "global_rate_limit_per_minute": 120,
    "request_timeout_seconds": 15,
    "overlap_hours": 6,
    "user_agent": "RegulatoryMonitor/1.0 (+https://github.com/regulatory-monitor/regulatory-monitor)",
    "retry": {"max_attempts": 3, "base_delay": 1.0, "max_delay": 8.0, "exponential_base": 2.0, "jitter": True},
    "circuit_breaker": {"failure_threshold": 5, "reset_timeout_seconds": 900},
}

_DESCRIPTOR_INT_FIELDS = (
    "priority",
    "rate_limit_per_minute",
    "rate_limit_per_hour",
    "item_cap",
    "backfill_item_cap",
    "lookback_days",
    "backfill_days",
)


def build_descriptor(name: str, data: Mapping[str, Any]) -> SourceDescriptor:
    """Build a :class:`SourceDescriptor` from one ``sources`` entry."""
    adapter = data.get("adapter")
    if not adapter:
        raise ConfigurationError(f"source {name!r} has no adapter")

    endpoints = data.get("endpoints") or ([data["endpoint"]] if data.get("endpoint") else [])
    if isinstance(endpoints, str):
        endpoints = [endpoints]
    if not endpoints:
        raise ConfigurationError(f"source {name!r} has no endpoints")

    kwargs: Dict[str, Any] = {
        key: int(data[key]) for key in _DESCRIPTOR_INT_FIELDS if data.get(key) is not None
    }
    if data.get("freshness_threshold_hours") is not None:
        kwargs["freshness_threshold_hours"] = float(data["freshness_threshold_hours"])

    return SourceDescriptor(
        name=name,
        adapter=str(adapter),
        endpoints=tuple(str(url) for url in endpoints),
        agency=str(data.get("agency") or name),
        payload_format=str(data.get("payload_format", "json")),
        enabled=bool(data.get("enabled", True)),
        date_formats=tuple(data.get("date_formats") or ()),
        credential_env=data.get("credential_env"),
        params=dict(data.get("params") or {}),
        **kwargs,
    )


@dataclass
class Settings:
    """Process-level settings; environment variables win over the YAML file."""

    database_path: Path = Path(DEFAULT_SETTINGS["database_path"])
    max_concurrency: int = DEFAULT_SETTINGS["max_concurrency"]
    run_timeout_seconds: float = DEFAULT_SETTINGS["run_timeout_seconds"]
    global_rate_limit_per_minute: int = DEFAULT_SETTINGS["global_rate_limit_per_minute"]
    request_timeout_seconds: float = DEFAULT_SETTINGS["request_timeout_seconds"]
    overlap_hours: float = DEFAULT_SETTINGS["overlap_hours"]
    user_agent: str = DEFAULT_SETTINGS["user_agent"]
    log_level: str = "INFO"
    retry: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS["retry"]))
    circuit_breaker: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS["circuit_breaker"]))

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "Settings":
        merged = {**DEFAULT_SETTINGS, **(data or {})}
        return cls(
            database_path=Path(merged["database_path"]),
            max_concurrency=int(merged["max_concurrency"]),
            run_timeout_seconds=float(merged["run_timeout_seconds"]),
            global_rate_limit_per_minute=int(merged["global_rate_limit_per_minute"]),
            request_timeout_seconds=float(merged["request_timeout_seconds"]),
            overlap_hours=float(merged["overlap_hours"]),
            user_agent=str(merged["user_agent"]),
            log_level=str(merged.get("log_level", "INFO")),
            retry={**DEFAULT_SETTINGS["retry"], **(merged.get("retry") or {})},
            circuit_breaker={**DEFAULT_SETTINGS["circuit_breaker"], **(merged.get("circuit_breaker") or {})},
        )

    @classmethod
    def from_env(cls, base: Optional["Settings"] = None) -> "Settings":
        """Apply ``REGMON_*`` environment overrides on top of ``base``."""
        settings = base or cls()
        db_path = os.environ.get("REGMON_DB_PATH")
        if db_path:
            settings.database_path = Path(db_path)
        log_level = os.environ.get("REGMON_LOG_LEVEL")
        if log_level:
            settings.log_level = log_level
        try:
            max_concurrency = os.environ.get("REGMON_MAX_CONCURRENCY")
            if max_concurrency:
                settings.max_concurrency = int(max_concurrency)
            run_timeout = os.environ.get("REGMON_RUN_TIMEOUT")
            if run_timeout:
                settings.run_timeout_seconds = float(run_timeout)
        except ValueError as exc:
            raise ConfigurationError(f"invalid numeric environment override: {exc}") from exc
        if settings.max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        return settings


class MonitorConfig:
    """Central configuration container: source descriptors and settings."""

    DEFAULT_CONFIG_PATH = Path("config/sources.yaml")

    def __init__(self, config_path: Optional[Path | str] = None) -> None:
        raw_path = config_path or os.environ.get("REGMON_CONFIG") or self.DEFAULT_CONFIG_PATH
        path = Path(raw_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        self.config_path = path
        self._data = self._load_config()
        self.settings = Settings.from_env(Settings.from_mapping(self._data.get("settings")))
        self._descriptors = self._build_descriptors()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MonitorConfig":
        """Build a config from an in-memory mapping (tests, embedding)."""
        instance = cls.__new__(cls)
        instance.config_path = None
        instance._data = dict(data)
        instance.settings = Settings.from_env(Settings.from_mapping(instance._data.get("settings")))
        instance._descriptors = instance._build_descriptors()
        return instance

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.info("Config %s not found, using built-in sources", self.config_path)
            return {"sources": DEFAULT_SOURCES, "settings": {}}
        with open(self.config_path, "r", encoding="utf-8") as handle:
            try:
                data = yaml.safe_load(handle) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"invalid YAML in {self.config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_path} must contain a mapping")
        return data

    def _build_descriptors(self) -> Dict[str, SourceDescriptor]:
        sources = self._data.get("sources") or {}
        if not isinstance(sources, dict):
            raise ConfigurationError("'sources' must be a mapping of name to descriptor")
        descriptors = {}
        for name, data in sources.items():
            descriptor = build_descriptor(str(name), data or {})
            if descriptor.adapter not in ADAPTER_REGISTRY:
                raise ConfigurationError(
                    f"source {descriptor.name!r} uses unknown adapter {descriptor.adapter!r}"
                )
            descriptors[descriptor.name] = descriptor
        return descriptors

    def descriptors(self) -> List[SourceDescriptor]:
        return list(self._descriptors.values())

    def get_source(self, name: str) -> Optional[SourceDescriptor]:
        return self._descriptors.get(name)

    def get_enabled_sources(self) -> List[SourceDescriptor]:
        return [descriptor for descriptor in self._descriptors.values() if descriptor.enabled]

    def get_setting(self, key: str, default: Any = None) -> Any:
        return getattr(self.settings, key, self._data.get("settings", {}).get(key, default))
