from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import yaml

from internet_map.errors import ConfigurationError


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    return v if v is not None else default


def _getint(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _getfloat(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _getbool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "y", "on")


@dataclass
class SweepConfig:
    # partitioning
    offset_bits: int = _getint("SWEEP_OFFSET_BITS", 16)
    space_bits: int = _getint("SWEEP_SPACE_BITS", 32)
    # concurrency
    concurrency: int = _getint("SWEEP_CONCURRENCY", 4)
    fan_out: int = _getint("SWEEP_FAN_OUT", 128)
    # probing
    probe_timeout: float = _getfloat("SWEEP_PROBE_TIMEOUT", 1.0)
    payload_size: int = _getint("SWEEP_PAYLOAD_SIZE", 56)
    privileged: bool = _getbool("SWEEP_PRIVILEGED", True)
    # retries
    commit_attempts: int = _getint("SWEEP_COMMIT_ATTEMPTS", 3)
    scan_attempts: int = _getint("SWEEP_SCAN_ATTEMPTS", 2)
    backoff: float = _getfloat("SWEEP_BACKOFF", 0.5)
    max_backoff: float = _getfloat("SWEEP_MAX_BACKOFF", 8.0)
    # shutdown / resume
    drain_timeout: float = _getfloat("SWEEP_DRAIN_TIMEOUT", 30.0)
    full_audit: bool = _getbool("SWEEP_FULL_AUDIT", False)
    # safety
    require_auth: bool = _getbool("SWEEP_REQUIRE_AUTH", True)
    auth_file: Optional[str] = _getenv("SWEEP_AUTH_FILE")
    blocklist_file: Optional[str] = _getenv("SWEEP_BLOCKLIST")
    exclude_reserved: bool = _getbool("SWEEP_EXCLUDE_RESERVED", False)
    # profile
    profile: Optional[str] = _getenv("SWEEP_PROFILE")


@dataclass
class LedgerConfig:
    path: str = _getenv("LEDGER_PATH", "internet_map.db") or "internet_map.db"
    busy_timeout: float = _getfloat("LEDGER_BUSY_TIMEOUT", 30.0)


@dataclass
class OTelConfig:
    enabled: bool = _getbool("OTEL_ENABLED", False)
    endpoint: str = _getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317") or "http://localhost:4317"
    service_name: str = _getenv("OTEL_SERVICE_NAME", "internet-map") or "internet-map"


@dataclass
class AppConfig:
    sweep: SweepConfig = field(default_factory=SweepConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    otel: OTelConfig = field(default_factory=OTelConfig)
    log_level: str = _getenv("LOG_LEVEL", "INFO") or "INFO"


def _apply_section(target: Any, name: str, values: Dict[str, Any]) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigurationError(f"unknown setting {name}.{key}")
        setattr(target, key, value)


def _apply_file(cfg: AppConfig, path: str) -> None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"config file {path} is not valid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")
    for section in ("sweep", "ledger", "otel"):
        values = raw.get(section) or {}
        if not isinstance(values, dict):
            raise ConfigurationError(f"section '{section}' must be a mapping")
        if section == "sweep" and values.get("profile"):
            # explicit values in the same file win over the profile
            cfg.sweep.profile = str(values["profile"])
            apply_profile(cfg.sweep)
        _apply_section(getattr(cfg, section), section, values)
    if "log_level" in raw:
        cfg.log_level = str(raw["log_level"])


def apply_profile(sweep: SweepConfig) -> None:
    # Politeness profiles trade coverage speed for load on the network.
    # Each stays under concurrency * fan_out = 1024 - 64 open sockets.
    prof = (sweep.profile or "").strip().lower()
    if not prof:
        return
    if prof == "low":
        sweep.concurrency = 1
        sweep.fan_out = 64
        sweep.probe_timeout = 2.0
    elif prof == "medium":
        sweep.concurrency = 2
        sweep.fan_out = 256
        sweep.probe_timeout = 1.5
    elif prof == "high":
        sweep.concurrency = 4
        sweep.fan_out = 224
        sweep.probe_timeout = 1.0
    else:
        raise ConfigurationError(f"unknown profile '{sweep.profile}' (expected low, medium or high)")


def validate(cfg: AppConfig) -> None:
    s = cfg.sweep
    if not 1 <= s.space_bits <= 32:
        raise ConfigurationError(f"space_bits must be within 1..32, got {s.space_bits}")
    if not 0 <= s.offset_bits <= s.space_bits:
        raise ConfigurationError(f"offset_bits must be within 0..{s.space_bits}, got {s.offset_bits}")
    if s.concurrency < 1:
        raise ConfigurationError("concurrency must be at least 1")
    if s.fan_out < 1:
        raise ConfigurationError("fan_out must be at least 1")
    if s.probe_timeout <= 0:
        raise ConfigurationError("probe_timeout must be positive")
    if s.commit_attempts < 1 or s.scan_attempts < 1:
        raise ConfigurationError("commit_attempts and scan_attempts must be at least 1")
    if s.drain_timeout < 0:
        raise ConfigurationError("drain_timeout must not be negative")


def load_config(path: Optional[str] = None) -> AppConfig:
    cfg = AppConfig()
    apply_profile(cfg.sweep)
    if path:
        _apply_file(cfg, path)
    validate(cfg)
    return cfg
