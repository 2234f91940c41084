"""Environment-driven worker configuration."""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

DEFAULT_CACHE_TTL: Dict[str, int] = {
    "product": 3600,
    "price": 1800,
    "availability": 900,
    "metadata": 7200,
    "search": 1800,
    "temporary": 300,
}

DEFAULT_CACHE_DIR = os.path.join(tempfile.gettempdir(), "pricewatch-cache")
DEFAULT_CACHE_SIZE_LIMIT = 2**30  # 1 GiB


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def database_url_from_env(env: Optional[Mapping[str, str]] = None) -> str:
    """Get database connection string from environment."""
    env = os.environ if env is None else env
    # Check for full connection string first
    if conn_str := env.get("DATABASE_URL"):
        return conn_str

    # Build from components
    host = env.get("PG_HOST", "localhost")
    port = env.get("PG_PORT", "5432")
    user = env.get("PG_USER", "pricewatch")
    password = env.get("PG_PASS", "pricewatch")
    database = env.get("PG_DB", "pricewatch")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


@dataclass
class WorkerSettings:
    """Operational knobs for the worker and its resilience components.

    Every value can be supplied through the environment (see
    :meth:`from_env`); defaults are polite-crawler values.
    """

    concurrency: int = 3
    job_attempts: int = 3
    job_backoff: float = 5.0  # Seconds, doubled per queue attempt
    stall_interval: float = 30.0
    max_stalled: int = 1
    poll_interval: float = 2.0

    fetch_deadline: float = 120.0  # Hard per-attempt deadline
    fetch_pool_size: int = 3
    headless: bool = True

    circuit_failure_threshold: int = 5
    circuit_cooldown: float = 60.0
    circuit_window: float = 300.0

    throttle_delay: float = 2.0
    throttle_max_in_flight: int = 0  # 0 = unbounded

    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_multiplier: float = 2.0
    retry_jitter: float = 0.1

    cache_ttl: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CACHE_TTL))
    cache_dir: str = DEFAULT_CACHE_DIR  # Shared by every worker process on the host
    cache_size_limit: int = DEFAULT_CACHE_SIZE_LIMIT

    database_url: str = ""
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.fetch_pool_size < 1:
            raise ValueError("fetch_pool_size must be at least 1")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.fetch_deadline <= 0:
            raise ValueError("fetch_deadline must be positive")

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        *,
        dotenv: bool = True,
    ) -> "WorkerSettings":
        """Build settings from environment variables.

        Parameters
        ----------
        env : Mapping[str, str], optional
            Variables to read (defaults to ``os.environ``)
        dotenv : bool
            Load a ``.env`` file into ``os.environ`` first

        Returns
        -------
        WorkerSettings
            Settings with defaults for unset variables
        """
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        cache_ttl = dict(DEFAULT_CACHE_TTL)
        cache_ttl["product"] = _env_int(env, "CACHE_TTL_PRODUCT", cache_ttl["product"])
        cache_ttl["price"] = _env_int(env, "CACHE_TTL_PRICE", cache_ttl["price"])

        return cls(
            concurrency=_env_int(env, "WORKER_CONCURRENCY", 3),
            job_attempts=_env_int(env, "JOB_ATTEMPTS", 3),
            job_backoff=_env_float(env, "JOB_BACKOFF_SECONDS", 5.0),
            stall_interval=_env_float(env, "JOB_STALL_INTERVAL", 30.0),
            max_stalled=_env_int(env, "JOB_MAX_STALLED", 1),
            poll_interval=_env_float(env, "WORKER_POLL_INTERVAL", 2.0),
            fetch_deadline=_env_float(env, "FETCH_DEADLINE_SECONDS", 120.0),
            fetch_pool_size=_env_int(env, "FETCH_POOL_SIZE", 3),
            headless=_env_bool(env, "HEADLESS", True),
            circuit_failure_threshold=_env_int(env, "CIRCUIT_FAILURE_THRESHOLD", 5),
            circuit_cooldown=_env_float(env, "CIRCUIT_COOLDOWN_SECONDS", 60.0),
            circuit_window=_env_float(env, "CIRCUIT_MONITORING_WINDOW", 300.0),
            throttle_delay=_env_float(env, "THROTTLE_DELAY_SECONDS", 2.0),
            throttle_max_in_flight=_env_int(env, "THROTTLE_MAX_IN_FLIGHT", 0),
            retry_attempts=_env_int(env, "RETRY_MAX_ATTEMPTS", 3),
            retry_base_delay=_env_float(env, "RETRY_BASE_DELAY", 1.0),
            retry_max_delay=_env_float(env, "RETRY_MAX_DELAY", 30.0),
            retry_multiplier=_env_float(env, "RETRY_MULTIPLIER", 2.0),
            retry_jitter=_env_float(env, "RETRY_JITTER", 0.1),
            cache_ttl=cache_ttl,
            cache_dir=env.get("CACHE_DIR", DEFAULT_CACHE_DIR),
            cache_size_limit=_env_int(env, "CACHE_SIZE_LIMIT", DEFAULT_CACHE_SIZE_LIMIT),
            database_url=database_url_from_env(env),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
