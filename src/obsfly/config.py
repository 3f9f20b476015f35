"""Runtime configuration read from ``OBSFLY_*`` environment variables."""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ENV_PREFIX = "OBSFLY_"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s%s=%r", ENV_PREFIX, name, raw)
        return default
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, raw)
        return default
    # Rejects NaN as well as non-positive values
    if not value > 0 or value == float("inf"):
        return default
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Engine and HTTP surface settings.

    Attributes:
        db_path: SQLite database path, ``:memory:`` for a transient store.
        default_minutes: Lookback used when a request gives none.
        default_interval_seconds: Bucket width when a query gives none.
        query_timeout_seconds: Deadline for the store round trips of one
            request.
        max_stack_samples: Most recent profile samples read per flamegraph.
        default_page_size: Page size of paginated endpoints.
        log_level: Level applied to the ``obsfly`` logger.
        capture_logs: Store the engine's own log records in the log stream.
        log_account_id: Account the captured log records are stored under.
        purge_interval_seconds: Period of the retention purge while the
            app is running.
    """

    db_path: str = ":memory:"
    default_minutes: int = 15
    default_interval_seconds: int = 60
    query_timeout_seconds: float = 30.0
    max_stack_samples: int = 10000
    default_page_size: int = 20
    log_level: str = "INFO"
    capture_logs: bool = False
    log_account_id: int = 1
    purge_interval_seconds: float = 300.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        env = os.environ if env is None else env
        defaults = cls()
        level = env.get(ENV_PREFIX + "LOG_LEVEL", defaults.log_level).strip().upper()
        if level not in logging.getLevelNamesMapping():
            level = defaults.log_level
        return cls(
            db_path=env.get(ENV_PREFIX + "DB_PATH") or defaults.db_path,
            default_minutes=_env_int(env, "DEFAULT_MINUTES", defaults.default_minutes),
            default_interval_seconds=_env_int(
                env, "DEFAULT_INTERVAL_SECONDS", defaults.default_interval_seconds
            ),
            query_timeout_seconds=_env_float(
                env, "QUERY_TIMEOUT_SECONDS", defaults.query_timeout_seconds
            ),
            max_stack_samples=_env_int(
                env, "MAX_STACK_SAMPLES", defaults.max_stack_samples
            ),
            default_page_size=_env_int(
                env, "DEFAULT_PAGE_SIZE", defaults.default_page_size
            ),
            log_level=level,
            capture_logs=_env_bool(env, "CAPTURE_LOGS", defaults.capture_logs),
            log_account_id=_env_int(env, "LOG_ACCOUNT_ID", defaults.log_account_id),
            purge_interval_seconds=_env_float(
                env, "PURGE_INTERVAL_SECONDS", defaults.purge_interval_seconds
            ),
        )
