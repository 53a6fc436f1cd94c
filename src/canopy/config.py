"""Settings for a canopy instance, read from ``CANOPY_*`` environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CanopySettings(BaseSettings):
    """Tunables for ``CanopyAsync``.

    Components never read the environment themselves; build one of these
    (or let ``CanopyAsync`` build the default) and pass it in.
    """

    model_config = SettingsConfigDict(
        env_prefix="CANOPY_",
        env_file=".env",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite://"
    statement_timeout: float = Field(default=10.0, gt=0)

    # Cache; a shared Redis when set, otherwise process-local memory
    redis_url: str | None = None
    cache_default_ttl: int = Field(default=300, ge=1)
    listing_cache_ttl: int = Field(default=60, ge=1)

    # Tree
    max_tree_depth: int = Field(default=256, ge=1)
    closure_strategy: Literal["bfs", "cte"] = "bfs"
    search_limit: int = Field(default=100, ge=1)

    # Sharing
    share_token_length: int = Field(default=16, ge=8, le=64)

    # Maintenance
    trash_retention_days: int = Field(default=15, ge=0)
    share_sweep_interval: float = Field(default=3600.0, gt=0)
    trash_sweep_interval: float = Field(default=86400.0, gt=0)
