"""
Branchvars Configuration

Environment-based configuration for the branching variable engine.
"""
import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _app_version_from_package() -> str:
    """Read version from pyproject.toml — the single source of truth."""
    try:
        from importlib.metadata import version
        return version("branchvars")
    except Exception:
        pass
    # Fallback: parse pyproject.toml directly (dev / non-installed mode)
    try:
        from pathlib import Path
        import re
        pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
        match = re.search(r'^version\s*=\s*"([^"]+)"', pyproject.read_text(), re.MULTILINE)
        if match:
            return match.group(1)
    except Exception:
        pass
    return "0.0.0-unknown"


# Single source of truth for the snapshot cadence and diff compression limit.
# Referenced by BranchVariableConfig defaults and the [DEBUG:branch] directive.
DEFAULT_SNAPSHOT_INTERVAL: int = 5
DEFAULT_COMPRESSION_THRESHOLD: int = 100


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Service Info (app_version: single source is pyproject.toml when installed; else fallback)
    app_name: str = "Branchvars"
    app_version: str = _app_version_from_package()
    debug: bool = False
    log_level: str = "INFO"

    # Snapshot / diff storage policy
    enable_snapshots: bool = True
    enable_differential_storage: bool = True
    max_snapshot_interval: int = DEFAULT_SNAPSHOT_INTERVAL  # full snapshot every Nth node
    compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD  # diffs larger than this become snapshots

    # Change ledger retention: once the ledger exceeds history_limit entries
    # it is cut back to the most recent history_retain entries.
    history_limit: int = 100
    history_retain: int = 50

    # Mutation parsing
    update_block_tags: list[str] = ["UpdateVariable"]
    hidden_block_tags: list[str] = ["Analysis"]
    expand_debug_directives: bool = True

    # Default values chosen for uninitialized variables by name heuristics
    default_time_value: str = "morning"
    default_location_value: str = "unknown location"
    default_state_value: str = "normal"

    @model_validator(mode="after")
    def _clamp_history_retention(self) -> "Settings":
        """Keep history_retain within history_limit so truncation always shrinks the ledger."""
        if self.history_retain > self.history_limit:
            logging.getLogger(__name__).warning(
                "BRANCHVARS_HISTORY_RETAIN=%d exceeds BRANCHVARS_HISTORY_LIMIT=%d; clamping.",
                self.history_retain,
                self.history_limit,
            )
            self.history_retain = self.history_limit
        return self

    model_config = SettingsConfigDict(
        env_prefix="BRANCHVARS_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience access
settings = get_settings()
