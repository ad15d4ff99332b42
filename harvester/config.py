"""Configuration loading: defaults, YAML file, environment, explicit overrides."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import SchedulePolicy

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "HARVEST_"
DEFAULT_START_URL = "https://flippa.com/search?filter[property_type][]=website"
DEFAULT_STORAGE_PATH = "config/harvester_browser_state.json"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


class HarvestConfig(BaseModel):
    """Settings for a single collection run."""

    start_url: str = DEFAULT_START_URL
    base_url: str = "https://flippa.com"
    page_param: str = "page"
    page_size: int = Field(default=25, ge=1)

    # Coverage control
    completeness_target: float = 0.95
    recheck_interval: int = Field(default=25, ge=1)
    volatile_recheck_interval: int = Field(default=10, ge=1)
    page_ceiling: int = Field(default=500, ge=1)
    max_empty_pages: int = Field(default=5, ge=1)
    fixed_pages: Optional[int] = None  # skip strategy selection when set

    # Retry and pacing
    max_retries: int = Field(default=3, ge=1)
    backoff_base_s: float = 2.0
    backoff_cap_s: float = 30.0
    delay_range_ms: Tuple[int, int] = (2000, 4000)
    min_delay_ms: int = 1500
    schedule_policy: SchedulePolicy = SchedulePolicy.CONTINUOUS

    # Renderer
    headless: bool = True
    navigation_timeout_ms: int = 60000
    challenge_timeout_ms: int = 30000
    wait_condition: str = "domcontentloaded"
    storage_state_path: Optional[str] = DEFAULT_STORAGE_PATH
    profile_path: Optional[str] = None

    # Estimator
    volatility_threshold: float = 10.0  # items per hour
    change_threshold: float = 0.15
    history_size: int = 100
    velocity_window: int = 10
    divergence_factor: float = 3.0
    min_plausible_total: int = 1
    max_plausible_total: int = 1_000_000

    @field_validator("completeness_target")
    @classmethod
    def _check_target(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("completeness_target must be within (0, 1]")
        return v

    @field_validator("delay_range_ms", mode="before")
    @classmethod
    def _parse_delay_range(cls, v):
        if isinstance(v, str):
            parts = [p.strip() for p in v.replace("-", ",").split(",") if p.strip()]
            return tuple(int(p) for p in parts)
        return v

    @model_validator(mode="after")
    def _check_delays(self) -> "HarvestConfig":
        low, high = self.delay_range_ms
        if low < 0 or high < low:
            raise ValueError(f"delay_range_ms must be ordered, got {self.delay_range_ms}")
        return self


class SchedulerConfig(BaseModel):
    """Settings for the multi-worker scheduler."""

    workers: int = Field(default=4, ge=1)
    total_pages: int = Field(default=200, ge=1)
    start_page: int = Field(default=1, ge=1)
    completeness_target: float = 0.95
    restart_cooldown_s: float = 60.0
    max_restarts: int = 2
    health_interval_s: float = 300.0
    max_runtime_s: float = 7200.0
    error_ceiling: int = 10
    poll_interval_s: float = 5.0
    work_dir: str = "data/scheduler"
    policies: List[SchedulePolicy] = Field(default_factory=list)
    delay_ranges_ms: List[Tuple[int, int]] = Field(default_factory=list)


def _read_yaml(path: str | Path) -> Dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping")
    return data


def _env_overrides() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name, field in HarvestConfig.model_fields.items():
        env_name = f"{ENV_PREFIX}{name.upper()}"
        if os.getenv(env_name) is None:
            continue
        if field.annotation in (bool, "bool"):
            values[name] = _env_bool(env_name, bool(field.default))
        else:
            values[name] = os.environ[env_name]
    return values


def load_config(path: Optional[str | Path] = None, **overrides: Any) -> HarvestConfig:
    """Build a HarvestConfig.

    Parameters
    ----------
    path : str or Path, optional
        YAML file; a ``scheduler`` section in it is ignored here
    **overrides
        Explicit values (usually from the CLI); ``None`` values are skipped

    Returns
    -------
    HarvestConfig
        Validated configuration
    """
    load_dotenv()
    values: Dict[str, Any] = {}
    if path:
        data = _read_yaml(path)
        data.pop("scheduler", None)
        values.update(data)
    values.update(_env_overrides())
    values.update({k: v for k, v in overrides.items() if v is not None})
    config = HarvestConfig(**values)
    LOGGER.debug("Loaded harvest config: %s", config.model_dump(mode="json"))
    return config


def load_scheduler_config(path: Optional[str | Path] = None, **overrides: Any) -> SchedulerConfig:
    """Build a SchedulerConfig from the ``scheduler`` section of a YAML file."""
    values: Dict[str, Any] = {}
    if path:
        values.update(_read_yaml(path).get("scheduler") or {})
    values.update({k: v for k, v in overrides.items() if v is not None})
    return SchedulerConfig(**values)
