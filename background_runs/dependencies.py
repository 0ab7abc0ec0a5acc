"""FastAPI dependencies shared by the run routes."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from background_runs.config import Settings, settings
from background_runs.executors.base import ExecutorRegistry
from background_runs.executors.webhook import build_default_registry
from background_runs.services.telemetry import TelemetryEmitter, build_telemetry_emitter


def get_settings() -> Settings:
    return settings


@lru_cache(maxsize=1)
def get_executors() -> ExecutorRegistry:
    """Build the executor registry once per process."""
    return build_default_registry(settings)


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryEmitter:
    """Build the telemetry emitter once per process."""
    return build_telemetry_emitter(settings)


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Caller identity set by the authenticating proxy."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


def require_user(user_id: Optional[str] = Depends(get_user_id)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized. Please log in.")
    return user_id
