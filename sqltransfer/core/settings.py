"""Engine-wide settings read from the ``settings`` section of a profile."""

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from sqltransfer.resilience import RetryConfig


@dataclass
class EngineSettings:
    """Timeouts, parallelism and storage locations for the engine.

    Timeouts are in seconds; ``None`` or 0 disables them.
    """

    extract_timeout: Optional[float] = 300.0
    load_timeout: Optional[float] = 600.0
    max_workers: int = 1
    max_concurrent_runs: int = 2
    state_path: Optional[str] = None
    recorder_url: Optional[str] = None
    validation_sample_size: int = 10
    validate_incremental_only: bool = False
    persistence_max_attempts: int = 3
    persistence_initial_delay: float = 0.5
    schedule_poll_interval: float = 60.0

    def __post_init__(self):
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.max_concurrent_runs < 1:
            raise ValueError(
                f"max_concurrent_runs must be at least 1, got {self.max_concurrent_runs}"
            )
        if self.persistence_max_attempts < 1:
            raise ValueError("persistence_max_attempts must be at least 1")

    @property
    def persistence_retry(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.persistence_max_attempts,
            initial_delay=self.persistence_initial_delay,
        )

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> "EngineSettings":
        """Build settings, converting substituted string values to field types.

        Raises:
            ValueError: On unknown keys or unconvertible values
        """
        config = dict(config or {})
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(config) - set(known))
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")

        values = {}
        for name, value in config.items():
            default = known[name].default
            values[name] = _convert(name, value, default)
        return cls(**values)


def _convert(name: str, value: Any, default: Any) -> Any:
    if value is None or value == "":
        return None
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value {value!r} for setting '{name}'") from e
    return value
