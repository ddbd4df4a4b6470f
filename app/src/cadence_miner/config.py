"""
Configuration management for the miner scheduler.

Loads configuration from a TOML file and provides structured, immutable access.
Every section is optional; missing values fall back to the defaults in
``constants``. Durations are Go-style strings ("2m", "100ms", "1m30s") or
plain numbers of seconds.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import tomli

from .constants import (
    CONNECT_ATTEMPTS,
    CONNECT_INTERVAL,
    DEFAULT_ENDPOINT,
    DEFAULT_RETRY_DURATION,
    DEFAULT_TARGET_BLOCK_TIME,
    MINE_DEADLINE,
    MINE_WATCHDOG,
    STOP_DEADLINE,
)

_DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as ``"2m"``, ``"1m30s"``, ``"100ms"`` or a number of seconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int | float):
        return timedelta(seconds=value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    if text == "0":
        return timedelta(0)

    total = timedelta(0)
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return total


def _positive(name: str, value: timedelta) -> timedelta:
    if value <= timedelta(0):
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class NodeConfig:
    """Node endpoint and TLS credential paths."""

    endpoint: str = DEFAULT_ENDPOINT
    ca: str = ""
    cert: str = ""
    key: str = ""

    def __post_init__(self) -> None:
        scheme = urlparse(self.endpoint).scheme
        if scheme not in ("ws", "wss"):
            raise ValueError(f"node.endpoint must be a ws:// or wss:// URL, got {self.endpoint!r}")


@dataclass(frozen=True)
class TimingConfig:
    """Block cadence configuration."""

    target_block_time: timedelta = DEFAULT_TARGET_BLOCK_TIME
    retry_duration: timedelta = DEFAULT_RETRY_DURATION

    def __post_init__(self) -> None:
        _positive("timing.target_block_time", self.target_block_time)
        _positive("timing.retry_duration", self.retry_duration)

    @property
    def failure_backoff(self) -> timedelta:
        """Wait after a failed mining attempt; never longer than one block interval."""
        return min(self.retry_duration, self.target_block_time)


@dataclass(frozen=True)
class AttemptConfig:
    """Timing of a single mining attempt."""

    deadline: timedelta = MINE_DEADLINE
    watchdog: timedelta = MINE_WATCHDOG
    stop_deadline: timedelta = STOP_DEADLINE

    def __post_init__(self) -> None:
        _positive("attempt.deadline", self.deadline)
        _positive("attempt.watchdog", self.watchdog)
        _positive("attempt.stop_deadline", self.stop_deadline)
        if self.watchdog >= self.deadline:
            raise ValueError(
                f"attempt.watchdog ({self.watchdog}) must be shorter than attempt.deadline ({self.deadline})"
            )


@dataclass(frozen=True)
class StartupConfig:
    """Connection retries before the scheduler starts."""

    connect_attempts: int = CONNECT_ATTEMPTS
    connect_interval: timedelta = CONNECT_INTERVAL

    def __post_init__(self) -> None:
        if self.connect_attempts < 1:
            raise ValueError(f"startup.connect_attempts must be >= 1, got {self.connect_attempts}")
        _positive("startup.connect_interval", self.connect_interval)


@dataclass(frozen=True)
class MinerConfig:
    """Complete miner scheduler configuration."""

    node: NodeConfig = field(default_factory=NodeConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    attempt: AttemptConfig = field(default_factory=AttemptConfig)
    startup: StartupConfig = field(default_factory=StartupConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MinerConfig":
        """Create configuration from parsed TOML dictionary."""
        unknown = set(data) - {"node", "timing", "attempt", "startup"}
        if unknown:
            raise ValueError(f"unknown config sections: {', '.join(sorted(unknown))}")

        node_data = _section(data, "node", {"endpoint", "ca", "cert", "key"})
        timing_data = _section(data, "timing", {"target_block_time", "retry_duration"})
        attempt_data = _section(data, "attempt", {"deadline", "watchdog", "stop_deadline"})
        startup_data = _section(data, "startup", {"connect_attempts", "connect_interval"})

        node = NodeConfig(**{k: str(v) for k, v in node_data.items()})
        timing = TimingConfig(**{k: parse_duration(v) for k, v in timing_data.items()})
        attempt = AttemptConfig(**{k: parse_duration(v) for k, v in attempt_data.items()})

        startup_kwargs: dict[str, Any] = {}
        if "connect_attempts" in startup_data:
            try:
                startup_kwargs["connect_attempts"] = int(startup_data["connect_attempts"])
            except (TypeError, ValueError):
                raise ValueError(f"invalid startup.connect_attempts: {startup_data['connect_attempts']!r}")
        if "connect_interval" in startup_data:
            startup_kwargs["connect_interval"] = parse_duration(startup_data["connect_interval"])

        return cls(node=node, timing=timing, attempt=attempt, startup=StartupConfig(**startup_kwargs))

    @classmethod
    def load(cls, config_path: str | Path) -> "MinerConfig":
        """Load configuration from TOML file."""
        path = Path(config_path)
        with path.open("rb") as f:
            data = tomli.load(f)
        return cls.from_dict(data)

    def with_overrides(
        self,
        *,
        endpoint: str | None = None,
        ca: str | None = None,
        cert: str | None = None,
        key: str | None = None,
        target_block_time: timedelta | None = None,
        retry_duration: timedelta | None = None,
    ) -> "MinerConfig":
        """Return a copy with command-line values applied; None leaves a field unchanged."""
        node_changes = {
            k: v for k, v in {"endpoint": endpoint, "ca": ca, "cert": cert, "key": key}.items() if v is not None
        }
        timing_changes = {
            k: v
            for k, v in {"target_block_time": target_block_time, "retry_duration": retry_duration}.items()
            if v is not None
        }
        return dataclasses.replace(
            self,
            node=dataclasses.replace(self.node, **node_changes),
            timing=dataclasses.replace(self.timing, **timing_changes),
        )


def _section(data: dict[str, Any], name: str, allowed: set[str]) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ValueError(f"[{name}] must be a table")
    unknown = set(section) - allowed
    if unknown:
        raise ValueError(f"unknown keys in [{name}]: {', '.join(sorted(unknown))}")
    return section
