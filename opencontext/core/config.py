"""
Configuration - environment-driven settings for the context store and the
self-improvement loop.

Values are read once into an ImproverConfig and passed to the control plane,
the tick and the API. Nothing below the config layer reads os.environ.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

ENV_PREFIX = "OPENCONTEXT_"

RISK_TIERS = ("low", "medium", "high")

# Compiled-in auto-execute defaults per risk tier
AUTO_EXECUTE_DEFAULTS: Dict[str, bool] = {
    "low": True,
    "medium": False,
    "high": False,
}

DEFAULT_TICK_TIMEOUT_MS = 30_000
DEFAULT_PENDING_TTL_MS = 7 * 24 * 60 * 60 * 1000
DEFAULT_ANALYZER_TIMEOUT_MS = 10_000
DEFAULT_TICK_INTERVAL_SEC = 300

# Version string
VERSION = "0.4.0"


def _int_env(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _flag_env(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None:
        return default
    if default:
        return raw.strip().lower() != "false"
    return raw.strip().lower() == "true"


def default_home() -> Path:
    """Directory holding contexts.db, awareness.json and schema.json."""
    return Path.home() / ".opencontext"


@dataclass
class ImproverConfig:
    """Settings for one store instance.

    auto_approve holds the raw per-tier override strings exactly as given
    (missing tiers fall back to AUTO_EXECUTE_DEFAULTS).
    """
    home: Path = field(default_factory=default_home)
    db_path: Optional[Path] = None
    observer_path: Optional[Path] = None
    schema_path: Optional[Path] = None
    auto_approve: Dict[str, str] = field(default_factory=dict)
    tick_timeout_ms: int = DEFAULT_TICK_TIMEOUT_MS
    pending_ttl_ms: int = DEFAULT_PENDING_TTL_MS
    analyzer_timeout_ms: int = DEFAULT_ANALYZER_TIMEOUT_MS
    background_enabled: bool = True
    tick_interval_sec: int = DEFAULT_TICK_INTERVAL_SEC
    debug: bool = False

    def __post_init__(self):
        self.home = Path(self.home)
        if self.db_path is None:
            self.db_path = self.home / "contexts.db"
        if self.observer_path is None:
            self.observer_path = self.home / "awareness.json"
        if self.schema_path is None:
            self.schema_path = self.home / "schema.json"
        self.db_path = Path(self.db_path)
        self.observer_path = Path(self.observer_path)
        self.schema_path = Path(self.schema_path)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ImproverConfig":
        """Build a config from environment-style variables."""
        env = os.environ if environ is None else environ

        home = env.get(f"{ENV_PREFIX}HOME")
        overrides = {}
        for tier in RISK_TIERS:
            value = env.get(f"{ENV_PREFIX}AUTO_APPROVE_{tier.upper()}")
            if value is not None:
                overrides[tier] = value

        return cls(
            home=Path(home).expanduser() if home else default_home(),
            db_path=env.get(f"{ENV_PREFIX}DB_PATH") or None,
            observer_path=env.get(f"{ENV_PREFIX}OBSERVER_PATH") or None,
            schema_path=env.get(f"{ENV_PREFIX}SCHEMA_PATH") or None,
            auto_approve=overrides,
            tick_timeout_ms=_int_env(env, f"{ENV_PREFIX}TICK_TIMEOUT", DEFAULT_TICK_TIMEOUT_MS),
            pending_ttl_ms=_int_env(env, f"{ENV_PREFIX}PENDING_TTL", DEFAULT_PENDING_TTL_MS),
            analyzer_timeout_ms=_int_env(env, f"{ENV_PREFIX}ANALYZER_TIMEOUT", DEFAULT_ANALYZER_TIMEOUT_MS),
            background_enabled=_flag_env(env, f"{ENV_PREFIX}BACKGROUND", True),
            tick_interval_sec=_int_env(env, f"{ENV_PREFIX}TICK_INTERVAL_SEC", DEFAULT_TICK_INTERVAL_SEC),
            debug=_flag_env(env, "DEBUG", False),
        )

    def auto_execute_enabled(self, tier: str) -> bool:
        """Resolve the auto-execute switch for a risk tier.

        An override of "false" or "0" disables; any other override value
        enables. Without an override the compiled-in default applies.
        """
        override = self.auto_approve.get(tier)
        if override is not None:
            return override.strip().lower() not in ("false", "0")
        return AUTO_EXECUTE_DEFAULTS.get(tier, False)

    def ensure_directories(self):
        """Ensure the directories for the store files exist."""
        for path in (self.db_path, self.observer_path, self.schema_path):
            path.parent.mkdir(parents=True, exist_ok=True)


def validate_config(config: ImproverConfig) -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    for tier in config.auto_approve:
        if tier not in RISK_TIERS:
            issues.append(f"Unknown risk tier override: {tier}")

    if config.tick_timeout_ms < 1:
        issues.append("OPENCONTEXT_TICK_TIMEOUT must be >= 1")

    if config.pending_ttl_ms < 1:
        issues.append("OPENCONTEXT_PENDING_TTL must be >= 1")

    if config.analyzer_timeout_ms < 1:
        issues.append("OPENCONTEXT_ANALYZER_TIMEOUT must be >= 1")

    if config.tick_interval_sec < 1:
        issues.append("OPENCONTEXT_TICK_INTERVAL_SEC must be >= 1")

    return issues
