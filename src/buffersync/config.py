"""Configuration models for the clocked buffer client."""

import logging
from pathlib import Path
from typing import List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class ClockConfig(BaseModel):
    """Clock model settings."""

    alpha: float = Field(0.95, gt=0.0, le=1.0, description="Forgetting factor of the regression")
    nominal_rate_hz: float = Field(
        1000.0, gt=0.0,
        description="Sampling rate assumed for the first fit when no rate is known yet"
    )


class PolicyConfig(BaseModel):
    """When to trust the clock model and when to poll the server."""

    max_samp_error: float = Field(10000, gt=0, description="Max tolerated prediction error in samples")
    update_interval_ms: float = Field(3000, ge=0, description="Poll when the last ground truth is older than this")
    min_update_interval_ms: float = Field(10, ge=0, description="Never poll more often than this")
    min_fit_points: int = Field(8, ge=1, description="Poll until this many points were fitted")
    max_wrong: int = Field(5, ge=0, description="Reset after more consecutive ordering violations than this")
    drift_tolerance_s: float = Field(
        0.5, gt=0.0,
        description="Lost/extra sample threshold, in seconds of samples at the fitted rate"
    )


class CalibrationConfig(BaseModel):
    """Wait schedule of the initial multi-point calibration."""

    waits_ms: List[int] = Field(default_factory=lambda: [100] * 9)


class TransportConfig(BaseModel):
    """Connection to the buffer server."""

    host: str = "localhost"
    port: int = Field(1972, gt=0, lt=65536)
    # None keeps reads unbounded so long WAIT_DAT requests are not cut short
    read_timeout_s: Optional[float] = Field(None, gt=0)
    connect_timeout_s: Optional[float] = Field(10.0, gt=0)
    byte_order: Literal["little", "big"] = "little"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_file: Optional[str] = None
    propagate: bool = Field(False, description="Also hand records to the root logger's handlers")


class BufferSyncConfig(BaseModel):
    """Complete configuration, one section per concern."""

    clock: ClockConfig = Field(default_factory=ClockConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Union[str, Path]) -> BufferSyncConfig:
    """
    Load configuration from a YAML file.

    Missing sections fall back to their defaults. An unreadable file or
    values that fail validation raise ConfigurationError.
    """
    path = Path(config_path)
    try:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config {path}: {e}")
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config {path} must contain a mapping, got {type(raw).__name__}")

    try:
        config = BufferSyncConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config {path}: {e}") from e

    logger.info(f"Loaded config from {path}: sections={list(raw.keys())}")
    return config
