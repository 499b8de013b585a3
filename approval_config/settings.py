"""
Engine settings (``approval_config.settings``).

Responsibility
--------------
Builds the frozen ``EngineSettings`` from defaults, an optional YAML file
and ``APPROVAL_*`` environment variables, in that order of precedence
(environment wins).

Architecture position
---------------------
**Config layer**.  No dependency on the kernel.  The facade in
``approval_services`` and the sweep CLI read settings; kernel services
receive plain values.

Invariants enforced
-------------------
* Unknown keys and invalid values raise ``ValueError`` naming the key.
* ``history_retention_days`` of ``None`` disables the retention purge.
* Exchange rates are Decimals quoted against the pivot currency.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "APPROVAL_"
CONFIG_FILE_ENV = "APPROVAL_CONFIG_FILE"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings of the approval engine."""

    database_url: str = "sqlite:///approval_engine.db"
    escalation_timeout_hours: float = 48.0
    reminder_days: int = 2
    sweep_interval_seconds: float = 3600.0
    workflow_cache_ttl_seconds: int = 300
    rate_cache_ttl_seconds: int = 3600
    history_retention_days: int | None = None
    log_level: str = "INFO"
    log_json: bool = True
    pivot_currency: str = "USD"
    exchange_rates: Mapping[str, Decimal] = field(default_factory=dict)


def _positive_float(key: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {key}: {value!r}") from None
    if number <= 0:
        raise ValueError(f"Invalid value for {key}: {value!r} (must be positive)")
    return number


def _positive_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid value for {key}: {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {key}: {value!r}") from None
    if number <= 0:
        raise ValueError(f"Invalid value for {key}: {value!r} (must be positive)")
    return number


def _optional_positive_int(key: str, value: Any) -> int | None:
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none", "off")):
        return None
    return _positive_int(key, value)


def _non_empty_str(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid value for {key}: {value!r}")
    return value.strip()


def _log_level(key: str, value: Any) -> str:
    level = _non_empty_str(key, value).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"Invalid value for {key}: {value!r}")
    return level


def _boolean(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
    raise ValueError(f"Invalid value for {key}: {value!r}")


def _currency(key: str, value: Any) -> str:
    code = _non_empty_str(key, value).upper()
    if len(code) != 3:
        raise ValueError(f"Invalid value for {key}: {value!r}")
    return code


def _rates(key: str, value: Any) -> dict[str, Decimal]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Invalid value for {key}: expected a mapping")
    rates: dict[str, Decimal] = {}
    for currency, rate in value.items():
        try:
            parsed = Decimal(str(rate))
        except InvalidOperation:
            raise ValueError(f"Invalid value for {key}.{currency}: {rate!r}") from None
        if not parsed.is_finite() or parsed <= 0:
            raise ValueError(f"Invalid value for {key}.{currency}: {rate!r}")
        rates[_currency(f"{key}.{currency}", currency)] = parsed
    return rates


_PARSERS: dict[str, Callable[[str, Any], Any]] = {
    "database_url": _non_empty_str,
    "escalation_timeout_hours": _positive_float,
    "reminder_days": _positive_int,
    "sweep_interval_seconds": _positive_float,
    "workflow_cache_ttl_seconds": _positive_int,
    "rate_cache_ttl_seconds": _positive_int,
    "history_retention_days": _optional_positive_int,
    "log_level": _log_level,
    "log_json": _boolean,
    "pivot_currency": _currency,
    "exchange_rates": _rates,
}

# exchange_rates is a mapping and only configurable from YAML.
_ENV_KEYS = tuple(name for name in _PARSERS if name != "exchange_rates")


def load_settings_file(path: Path | str) -> dict[str, Any]:
    """Read a settings YAML file.  Settings may sit under ``approval_engine``."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    section = data.get("approval_engine", data)
    if not isinstance(section, dict):
        raise ValueError(f"Settings file {path}: approval_engine must be a mapping")
    return section


def parse_settings(data: Mapping[str, Any], base: EngineSettings | None = None) -> EngineSettings:
    """Apply ``data`` on top of ``base`` (defaults when omitted)."""
    known = {f.name for f in fields(EngineSettings)}
    values: dict[str, Any] = {}
    for key, raw in data.items():
        if key not in known:
            raise ValueError(f"Unknown setting: {key}")
        values[key] = _PARSERS[key](key, raw)
    return replace(base or EngineSettings(), **values)


def get_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """The runtime settings entrypoint.

    Args:
        path: Optional YAML file.  Falls back to ``APPROVAL_CONFIG_FILE``.
        environ: Environment mapping; defaults to ``os.environ``.

    Raises:
        ValueError: an unknown key or an invalid value, naming the key.
    """
    env = os.environ if environ is None else environ
    path = path or env.get(CONFIG_FILE_ENV)

    settings = EngineSettings()
    if path:
        settings = parse_settings(load_settings_file(path), settings)

    overrides: dict[str, Any] = {}
    for name in _ENV_KEYS:
        env_key = f"{ENV_PREFIX}{name.upper()}"
        if env_key in env:
            overrides[name] = _PARSERS[name](env_key, env[env_key])
    return replace(settings, **overrides)
