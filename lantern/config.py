"""Settings for throttling and simulation, loaded from YAML."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .constants import DEFAULT_MAX_CONCURRENT_REQUESTS, DEFAULT_MAX_CONNECTIONS_PER_ORIGIN, MOBILE_SLOW_4G
from .errors import SettingsError

logger = logging.getLogger(__name__)

THROTTLING_METHODS = ("simulate", "provided", "devtools")


@dataclass
class ThrottlingSettings:
    rtt_ms: float = MOBILE_SLOW_4G["rtt_ms"]
    throughput_kbps: float = MOBILE_SLOW_4G["throughput_kbps"]
    cpu_slowdown_multiplier: float = MOBILE_SLOW_4G["cpu_slowdown_multiplier"]
    request_latency_ms: float = MOBILE_SLOW_4G["request_latency_ms"]
    download_throughput_kbps: float = MOBILE_SLOW_4G["download_throughput_kbps"]
    upload_throughput_kbps: float = MOBILE_SLOW_4G["upload_throughput_kbps"]


@dataclass
class SimulatorSettings:
    max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS
    max_connections_per_origin: int = DEFAULT_MAX_CONNECTIONS_PER_ORIGIN


@dataclass
class PrecomputedLanternData:
    """Per-origin values measured elsewhere; they replace the analyzer's estimates."""

    additional_rtt_by_origin: Dict[str, float] = field(default_factory=dict)
    server_response_time_by_origin: Dict[str, float] = field(default_factory=dict)


@dataclass
class Settings:
    throttling_method: str = "simulate"
    throttling: ThrottlingSettings = field(default_factory=ThrottlingSettings)
    simulator: SimulatorSettings = field(default_factory=SimulatorSettings)
    precomputed_lantern_data: Optional[PrecomputedLanternData] = None


def _optional_float(value: Any, default: float) -> float:
    if value is None:
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _optional_int(value: Any, default: int) -> int:
    if value is None:
        return int(default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def _float_mapping(value: Any, name: str) -> Dict[str, float]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SettingsError(f"{name} must be a mapping of origin to milliseconds", details={"field": name})
    result: Dict[str, float] = {}
    for origin, raw in value.items():
        try:
            result[str(origin)] = float(raw)
        except (TypeError, ValueError) as exc:
            raise SettingsError(
                f"{name}[{origin!r}] is not a number: {raw!r}", details={"field": name, "origin": origin}
            ) from exc
    return result


def _require_positive(name: str, value: float) -> None:
    if math.isnan(value) or value <= 0:
        raise SettingsError(f"{name} must be positive, got {value}", details={"field": name, "value": value})


def validate_settings(settings: Settings) -> Settings:
    if settings.throttling_method not in THROTTLING_METHODS:
        raise SettingsError(
            f"Unknown throttling method {settings.throttling_method!r}",
            code="UNKNOWN_THROTTLING_METHOD",
            details={"allowed": list(THROTTLING_METHODS)},
        )
    throttling = settings.throttling
    if math.isnan(throttling.rtt_ms) or throttling.rtt_ms < 0:
        raise SettingsError(f"rtt_ms must be non-negative, got {throttling.rtt_ms}", details={"field": "rtt_ms"})
    _require_positive("throughput_kbps", throttling.throughput_kbps)
    _require_positive("cpu_slowdown_multiplier", throttling.cpu_slowdown_multiplier)
    _require_positive("download_throughput_kbps", throttling.download_throughput_kbps)
    _require_positive("max_concurrent_requests", settings.simulator.max_concurrent_requests)
    _require_positive("max_connections_per_origin", settings.simulator.max_connections_per_origin)
    return settings


def settings_from_dict(raw: Optional[Mapping[str, Any]]) -> Settings:
    raw = dict(raw or {})
    defaults = ThrottlingSettings()
    throttling_raw = dict(raw.get("throttling", {}) or {})
    simulator_raw = dict(raw.get("simulator", {}) or {})
    precomputed_raw = raw.get("precomputed_lantern_data")

    throttling = ThrottlingSettings(
        rtt_ms=_optional_float(throttling_raw.get("rtt_ms"), defaults.rtt_ms),
        throughput_kbps=_optional_float(throttling_raw.get("throughput_kbps"), defaults.throughput_kbps),
        cpu_slowdown_multiplier=_optional_float(
            throttling_raw.get("cpu_slowdown_multiplier"), defaults.cpu_slowdown_multiplier
        ),
        request_latency_ms=_optional_float(throttling_raw.get("request_latency_ms"), defaults.request_latency_ms),
        download_throughput_kbps=_optional_float(
            throttling_raw.get("download_throughput_kbps"), defaults.download_throughput_kbps
        ),
        upload_throughput_kbps=_optional_float(
            throttling_raw.get("upload_throughput_kbps"), defaults.upload_throughput_kbps
        ),
    )
    simulator = SimulatorSettings(
        max_concurrent_requests=_optional_int(
            simulator_raw.get("max_concurrent_requests"), DEFAULT_MAX_CONCURRENT_REQUESTS
        ),
        max_connections_per_origin=_optional_int(
            simulator_raw.get("max_connections_per_origin"), DEFAULT_MAX_CONNECTIONS_PER_ORIGIN
        ),
    )
    precomputed = None
    if precomputed_raw:
        if not isinstance(precomputed_raw, Mapping):
            raise SettingsError("precomputed_lantern_data must be a mapping")
        precomputed = PrecomputedLanternData(
            additional_rtt_by_origin=_float_mapping(
                precomputed_raw.get("additional_rtt_by_origin"), "additional_rtt_by_origin"
            ),
            server_response_time_by_origin=_float_mapping(
                precomputed_raw.get("server_response_time_by_origin"), "server_response_time_by_origin"
            ),
        )

    settings = Settings(
        throttling_method=str(raw.get("throttling_method", "simulate") or "simulate").strip().lower(),
        throttling=throttling,
        simulator=simulator,
        precomputed_lantern_data=precomputed,
    )
    return validate_settings(settings)


def load_settings(path: Union[str, Path]) -> Settings:
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, Mapping):
        raise SettingsError(f"{path}: settings file must contain a mapping", details={"path": str(path)})
    settings = settings_from_dict(raw)
    logger.debug("loaded settings from %s: throttling_method=%s", path, settings.throttling_method)
    return settings
