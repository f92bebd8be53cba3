"""Load, validate, and hot-reload the refresh policy.

The policy lives in ``sync_policy.yaml`` alongside this module.  It is loaded
once and cached; ``reload_sync_policy()`` re-reads it from disk without
restarting the session.

Usage::

    from praysync.sync.policy_loader import get_sync_policy

    policy = get_sync_policy()
    policy.refresh.throttle_interval_s     # 600.0
    policy.freshness_for("prayer_state")   # TimeBoxed(stale_ms=0, gc_ms=300000)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from praysync.cache.policy import FreshnessPolicy, NeverStale, TimeBoxed

logger = logging.getLogger("praysync.sync.policy")

# Path to the YAML file sitting next to this module
_POLICY_PATH = Path(__file__).parent / "sync_policy.yaml"

KNOWN_RESOURCES = frozenset(
    {"home_data", "prayers_today", "active_people", "people", "intentions", "prayer_state", "user_stats"}
)


# ---------------------------------------------------------------------------
# Typed policy sections
# ---------------------------------------------------------------------------


@dataclass
class DayBoundaryConfig:
    """Local hours where the prayer day and the evening window start."""

    morning_start_hour: int = 4
    evening_start_hour: int = 16


@dataclass
class RefreshConfig:
    """Throttle and debounce intervals, in seconds."""

    throttle_interval_s: float = 600.0
    day_boundary_debounce_s: float = 2.0
    period_change_debounce_s: float = 15.0
    stale_threshold_s: float = 300.0
    foreground_cooldown_s: float = 600.0


@dataclass
class SyncPolicy:
    """Complete, validated refresh policy.

    Attributes:
        version:            Policy schema version string.
        day:                Prayer-day and period boundaries.
        refresh:            Throttle / debounce / foreground intervals.
        tracked_resources:  Resources re-evaluated on every scheduled refresh.
        critical_resources: Resources invalidated when the app is foregrounded.
        freshness:          Query name → FreshnessPolicy.
    """

    version: str = "1.0"
    day: DayBoundaryConfig = field(default_factory=DayBoundaryConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    tracked_resources: list[str] = field(default_factory=lambda: ["prayers_today", "prayer_state"])
    critical_resources: list[str] = field(
        default_factory=lambda: ["home_data", "prayers_today", "active_people", "prayer_state"]
    )
    freshness: dict[str, FreshnessPolicy] = field(default_factory=dict)
    _raw: dict = field(default_factory=dict, repr=False)

    def freshness_for(self, query_name: str, default: FreshnessPolicy | None = None) -> FreshnessPolicy | None:
        return self.freshness.get(query_name, default)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_policy.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync policy not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return raw


def _validate_and_build(raw: dict) -> SyncPolicy:
    """Validate the raw YAML dict and construct a SyncPolicy.

    Missing sections fall back to defaults; every invalid value is collected
    and reported in one ConfigValidationError.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, where: str, *, minimum: float = 0.0) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{where}.{key} = {number} must be >= {minimum}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Day boundaries ──
    day_raw = raw.get("day") or {}
    morning = int(_number(day_raw, "morning_start_hour", 4, "day"))
    evening = int(_number(day_raw, "evening_start_hour", 16, "day"))
    if not (0 <= morning < evening <= 23):
        errors.append(
            f"day hours must satisfy 0 <= morning_start_hour < evening_start_hour <= 23, "
            f"got {morning} / {evening}"
        )
    day = DayBoundaryConfig(morning_start_hour=morning, evening_start_hour=evening)

    # ── Refresh intervals ──
    rf_raw = raw.get("refresh") or {}
    defaults = RefreshConfig()
    refresh = RefreshConfig(
        throttle_interval_s=_number(rf_raw, "throttle_interval_s", defaults.throttle_interval_s, "refresh"),
        day_boundary_debounce_s=_number(rf_raw, "day_boundary_debounce_s", defaults.day_boundary_debounce_s, "refresh"),
        period_change_debounce_s=_number(rf_raw, "period_change_debounce_s", defaults.period_change_debounce_s, "refresh"),
        stale_threshold_s=_number(rf_raw, "stale_threshold_s", defaults.stale_threshold_s, "refresh"),
        foreground_cooldown_s=_number(rf_raw, "foreground_cooldown_s", defaults.foreground_cooldown_s, "refresh"),
    )

    # ── Resource lists ──
    def _resources(key: str, default: list[str]) -> list[str]:
        values = raw.get(key, default)
        if not isinstance(values, list):
            errors.append(f"{key} must be a list")
            return list(default)
        unknown = [v for v in values if v not in KNOWN_RESOURCES]
        for name in unknown:
            errors.append(f"{key}: unknown resource {name!r}")
        return [v for v in values if v in KNOWN_RESOURCES]

    base = SyncPolicy()
    tracked = _resources("tracked_resources", base.tracked_resources)
    critical = _resources("critical_resources", base.critical_resources)

    # ── Freshness ──
    freshness: dict[str, FreshnessPolicy] = {}
    for name, spec in (raw.get("freshness") or {}).items():
        if spec == "user_controlled":
            freshness[name] = NeverStale()
        elif isinstance(spec, dict) and "stale_minutes" in spec:
            stale = _number(spec, "stale_minutes", 5, f"freshness.{name}")
            gc = _number(spec, "gc_minutes", stale * 2, f"freshness.{name}")
            freshness[name] = TimeBoxed(stale_ms=int(stale * 60_000), gc_ms=int(gc * 60_000))
        else:
            errors.append(
                f"freshness.{name} must be 'user_controlled' or a mapping with stale_minutes"
            )

    if errors:
        raise ConfigValidationError(
            f"sync_policy.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncPolicy(
        version=version,
        day=day,
        refresh=refresh,
        tracked_resources=tracked,
        critical_resources=critical,
        freshness=freshness,
        _raw=raw,
    )


def load_sync_policy(path: Path | str | None = None) -> SyncPolicy:
    """Load and validate the refresh policy from disk.

    Args:
        path: Override path to YAML.  Uses the bundled sync_policy.yaml by default.
    """
    target = Path(path) if path else _POLICY_PATH
    policy = _validate_and_build(_load_yaml(target))
    logger.info("Loaded sync policy v%s from %s", policy.version, target)
    return policy


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_policy: SyncPolicy | None = None
_policy_lock = threading.Lock()


def get_sync_policy() -> SyncPolicy:
    """Return the global SyncPolicy, loading it on first call."""
    global _policy
    if _policy is None:
        with _policy_lock:
            if _policy is None:  # double-checked locking
                from praysync.config import get_settings

                _policy = load_sync_policy(get_settings().sync_policy_path)
    return _policy


def reload_sync_policy(path: Path | str | None = None) -> SyncPolicy:
    """Reload the policy from disk and replace the global singleton.

    If validation fails the old policy is retained and the error re-raised.

    Raises:
        ConfigValidationError: If the new policy is invalid.
        FileNotFoundError:     If the file is missing.
    """
    global _policy
    new_policy = load_sync_policy(path)  # validate before acquiring lock
    with _policy_lock:
        old_version = _policy.version if _policy else "none"
        _policy = new_policy
    logger.info("Reloaded sync policy: %s → %s", old_version, new_policy.version)
    return new_policy
