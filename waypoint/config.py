"""Runtime configuration, read from WAYPOINT_* environment variables."""

from collections.abc import Mapping
from dataclasses import dataclass
import os

from waypoint.constants import (
    BASE_DELAY_SECONDS,
    CAP_DELAY_SECONDS,
    DEFAULT_DB_PATH,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIME_BUDGET_SECONDS,
    STUCK_THRESHOLD_SECONDS,
)
from waypoint.retry import RetryPolicy


def _read_float(env: Mapping[str, str], name: str, default: float | None) -> float | None:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default

    try:
        return float(raw)
    except ValueError as err:
        raise ValueError(f"{name} must be a number, got {raw!r}") from err


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default

    try:
        return int(raw)
    except ValueError as err:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from err


@dataclass(frozen=True)
class WaypointConfig:
    db_path: str = DEFAULT_DB_PATH
    time_budget_seconds: float = DEFAULT_TIME_BUDGET_SECONDS
    stuck_threshold_seconds: float = STUCK_THRESHOLD_SECONDS
    base_delay_seconds: float = BASE_DELAY_SECONDS
    cap_delay_seconds: float = CAP_DELAY_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    # None: return when the queue is empty. Otherwise poll an empty queue at this interval
    idle_sleep_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.time_budget_seconds <= 0:
            raise ValueError(f"time_budget_seconds must be positive, got {self.time_budget_seconds}")
        if self.stuck_threshold_seconds <= 0:
            raise ValueError(f"stuck_threshold_seconds must be positive, got {self.stuck_threshold_seconds}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.idle_sleep_seconds is not None and self.idle_sleep_seconds < 0:
            raise ValueError(f"idle_sleep_seconds must be non-negative, got {self.idle_sleep_seconds}")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "WaypointConfig":
        """Build a config from environment variables, using defaults for any that are unset.

        @param env: The variables to read; defaults to os.environ
        @raises ValueError: If a variable is set but not a valid number
        """

        env = os.environ if env is None else env

        return cls(
            db_path=env.get("WAYPOINT_DB_PATH") or DEFAULT_DB_PATH,
            time_budget_seconds=_read_float(env, "WAYPOINT_TIME_BUDGET_SECONDS", DEFAULT_TIME_BUDGET_SECONDS),  # type: ignore[arg-type]
            stuck_threshold_seconds=_read_float(env, "WAYPOINT_STUCK_THRESHOLD_SECONDS", STUCK_THRESHOLD_SECONDS),  # type: ignore[arg-type]
            base_delay_seconds=_read_float(env, "WAYPOINT_BASE_DELAY_SECONDS", BASE_DELAY_SECONDS),  # type: ignore[arg-type]
            cap_delay_seconds=_read_float(env, "WAYPOINT_CAP_DELAY_SECONDS", CAP_DELAY_SECONDS),  # type: ignore[arg-type]
            max_attempts=_read_int(env, "WAYPOINT_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            idle_sleep_seconds=_read_float(env, "WAYPOINT_IDLE_SLEEP_SECONDS", None),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(base_delay_seconds=self.base_delay_seconds, cap_delay_seconds=self.cap_delay_seconds)
