"""
Runtime configuration for Alpaka.

All settings come from environment variables (a local .env file is loaded
with python-dotenv). Worker processes may override individual values with
CLI arguments, see alpaka_engine.workers.poller.
"""

import json
import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


class WorkerSpec(BaseModel):
    """One supervised worker: a project graph served for one job mode."""

    name: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    mode: Optional[str] = Field(None, description="Only claim jobs with this mode")
    command: Optional[List[str]] = Field(
        None,
        description="Process command line (defaults to the poller module)"
    )


class Settings(BaseModel):
    """Engine settings, built from the environment by get_settings()."""

    database_url: Optional[str] = None
    redis_url: Optional[str] = None

    # Shared secrets for the two HTTP surfaces
    external_secret: Optional[str] = None
    internal_secret: Optional[str] = None

    # Worker loop (seconds)
    poll_interval: float = Field(10.0, gt=0)
    heartbeat_interval: float = Field(30.0, gt=0)
    recovery_interval: float = Field(3600.0, gt=0)
    max_job_runtime: float = Field(90 * 60.0, gt=0)

    # Per-node default timeout (seconds)
    node_timeout: float = Field(120.0, gt=0)

    templates_dir: str = "templates"
    workers: List[WorkerSpec] = Field(default_factory=list)

    @field_validator("database_url")
    @classmethod
    def fix_postgres_scheme(cls, v: Optional[str]) -> Optional[str]:
        """Hosted Postgres URLs use postgres://, SQLAlchemy wants postgresql://"""
        if v and v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def load_settings() -> Settings:
    """Read settings from the current environment (no caching)."""
    workers_raw = os.getenv("ALPAKA_WORKERS", "")
    workers = json.loads(workers_raw) if workers_raw.strip() else []

    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        redis_url=os.getenv("REDIS_URL"),
        external_secret=os.getenv("ALPAKA_SECRET"),
        internal_secret=os.getenv("ALPAKA_INTERNAL_SECRET"),
        poll_interval=_float_env("POLL_INTERVAL", 10.0),
        heartbeat_interval=_float_env("HEARTBEAT_INTERVAL", 30.0),
        recovery_interval=_float_env("RECOVERY_INTERVAL", 3600.0),
        max_job_runtime=_float_env("MAX_JOB_RUNTIME", 90 * 60.0),
        node_timeout=_float_env("NODE_TIMEOUT", 120.0),
        templates_dir=os.getenv("TEMPLATES_DIR", "templates"),
        workers=workers,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings. Tests call get_settings.cache_clear() after patching env."""
    return load_settings()
