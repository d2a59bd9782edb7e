from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

ENV_PREFIX = "TRUSTLOOP_"


@dataclass(frozen=True)
class MonitorSettings:
    # seconds between ticks
    tick_interval: float = 30.0
    escalated_interval: float = 15.0


@dataclass(frozen=True)
class Settings:
    """
    Explicit configuration handed to the composition roots (API app, CLI).
    Core components never read the environment themselves.
    """
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    decision_timeout: float = 5.0
    log_level: str = "INFO"
    audit_path: Optional[str] = None
    rules_path: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            v = env.get(ENV_PREFIX + name)
            return v if v not in (None, "") else None

        def get_float(name: str, default: float) -> float:
            raw = get(name)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError as e:
                raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e

        monitor = MonitorSettings(
            tick_interval=get_float("TICK_INTERVAL", MonitorSettings.tick_interval),
            escalated_interval=get_float("ESCALATED_INTERVAL", MonitorSettings.escalated_interval),
        )
        if monitor.escalated_interval > monitor.tick_interval:
            raise ValueError("escalated interval must not be longer than the tick interval")

        return cls(
            monitor=monitor,
            decision_timeout=get_float("DECISION_TIMEOUT", cls.decision_timeout),
            log_level=(get("LOG_LEVEL") or cls.log_level).upper(),
            audit_path=get("AUDIT_PATH"),
            rules_path=get("RULES_PATH"),
        )
