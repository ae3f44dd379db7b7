import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from scan_errors import ConfigurationError

logger = logging.getLogger(__name__)


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} env var, using default {default}")
        return default


def _get_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} env var, using default {default}")
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ScanConfig:
    """Settings of the scanning engine, read from the environment (and .env)"""

    state_dir: str = ".scan_state"
    repo_cache_dir: str = ".repo_cache"
    quick_scan_limit: int = 100
    running_batch_size: int = 100
    checkpoint_every: int = 1
    fetch_retries: int = 3
    retry_backoff: float = 0.5
    deep_max_commits: Optional[int] = None
    deep_time_budget: Optional[float] = None
    entropy_threshold: float = 3.5
    skip_test_files: bool = False
    triage_enabled: bool = True
    ollama_model: str = "llama3.2"
    ollama_host: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ScanConfig":
        load_dotenv()
        defaults = cls()
        config = cls(
            state_dir=os.getenv("STATE_DIR", defaults.state_dir),
            repo_cache_dir=os.getenv("REPO_CACHE_DIR", defaults.repo_cache_dir),
            quick_scan_limit=_get_int("QUICK_SCAN_LIMIT", defaults.quick_scan_limit),
            running_batch_size=_get_int("RUNNING_BATCH_SIZE", defaults.running_batch_size),
            checkpoint_every=_get_int("CHECKPOINT_EVERY", defaults.checkpoint_every),
            fetch_retries=_get_int("FETCH_RETRIES", defaults.fetch_retries),
            retry_backoff=_get_float("RETRY_BACKOFF", defaults.retry_backoff),
            deep_max_commits=_get_int("DEEP_MAX_COMMITS", None),
            deep_time_budget=_get_float("DEEP_TIME_BUDGET", None),
            entropy_threshold=_get_float("ENTROPY_THRESHOLD", defaults.entropy_threshold),
            skip_test_files=_get_bool("SKIP_TEST_FILES", defaults.skip_test_files),
            triage_enabled=_get_bool("TRIAGE_ENABLED", defaults.triage_enabled),
            ollama_model=os.getenv("OLLAMA_MODEL", defaults.ollama_model),
            ollama_host=os.getenv("OLLAMA_HOST") or None,
        )
        config.validate()
        return config

    def validate(self) -> None:
        for name in ("quick_scan_limit", "running_batch_size", "checkpoint_every"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.fetch_retries < 0:
            raise ConfigurationError("fetch_retries must not be negative")
        if self.deep_max_commits is not None and self.deep_max_commits < 1:
            raise ConfigurationError("deep_max_commits must be at least 1")
        if self.deep_time_budget is not None and self.deep_time_budget <= 0:
            raise ConfigurationError("deep_time_budget must be positive")
