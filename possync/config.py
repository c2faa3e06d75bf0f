"""Configuration settings for possync."""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from .types import DEFAULT_MAX_RETRIES


class EmptySnapshotPolicy(str, Enum):
    """What a full refresh does when the remote returns no rows but local has some."""

    CONFIRM_TWICE = "confirm_twice"  # clear only after two consecutive empty snapshots
    TRUST = "trust"  # clear immediately
    NEVER = "never"  # keep local rows


class SyncSettings(BaseSettings):
    """Engine settings loaded from environment (POSSYNC_*)."""

    # Local store
    db_path: Optional[Path] = None  # defaults to $POSSYNC_HOME/offline.db

    # Remote (Supabase)
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    # Reachability probe; defaults to the Supabase REST root
    health_url: Optional[str] = None

    # Sync policy
    drain_interval: float = Field(default=30.0, gt=0)
    probe_interval: Optional[float] = Field(default=None, gt=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    queue_batch_size: Optional[int] = Field(default=None, ge=1)
    remote_timeout: Optional[float] = Field(default=15.0, gt=0)
    empty_snapshot_policy: EmptySnapshotPolicy = EmptySnapshotPolicy.CONFIRM_TWICE

    # Local write coordination
    mutation_lock_window: float = Field(default=2.0, ge=0)
    debounce_quiet_period: float = Field(default=2.0, ge=0)

    class Config:
        env_prefix = "POSSYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def resolved_health_url(self) -> Optional[str]:
        if self.health_url:
            return self.health_url
        if self.supabase_url:
            return self.supabase_url.rstrip("/") + "/rest/v1/"
        return None


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
