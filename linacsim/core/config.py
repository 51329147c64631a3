"""
Configuration management for the LINAC study emulator.

Provides centralized, validated configuration from environment variables
with proper type checking and defaults.
"""

from __future__ import annotations

from typing import Annotated, Dict, List, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, SettingsError

from linacsim.core.exceptions import ConfigurationError


class SimulationConfig(BaseSettings):
    """Delivery simulator timing and geometry configuration."""

    # Wall-clock bounds for one field's animation, whatever its clinical duration
    min_seconds: float = Field(default=2.5, alias="SIM_MIN_SECONDS")
    max_seconds: float = Field(default=10.0, alias="SIM_MAX_SECONDS")
    steps_per_second: int = Field(default=20, alias="SIM_STEPS_PER_SECOND")
    min_steps: int = Field(default=15, alias="SIM_MIN_STEPS")
    field_settle_seconds: float = Field(default=0.25, alias="SIM_FIELD_SETTLE_SECONDS")

    # Gantry arcs
    arc_flip_threshold_deg: float = Field(default=5.0, alias="ARC_FLIP_THRESHOLD_DEG")
    default_dose_rate: float = Field(default=600.0, alias="DEFAULT_DOSE_RATE")

    @field_validator("min_steps")
    @classmethod
    def validate_min_steps(cls, v):
        if v < 1:
            raise ValueError("SIM_MIN_STEPS must be at least 1")
        return v

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class SyncConfig(BaseSettings):
    """Cross-display synchronization configuration."""

    state_dir: str = Field(default="./.linac_state", alias="LINAC_STATE_DIR")
    key_prefix: str = Field(default="linac-study", alias="SYNC_KEY_PREFIX")

    # ZeroMQ broadcast; leave the endpoint empty to rely on store polling only
    endpoint: Optional[str] = Field(default=None, alias="SYNC_ENDPOINT")
    # Comma-separated in the environment, not JSON
    peers: Annotated[List[str], NoDecode] = Field(default_factory=list, alias="SYNC_PEERS")
    poll_interval: float = Field(default=0.2, alias="SYNC_POLL_INTERVAL")

    @field_validator("peers", mode="before")
    @classmethod
    def parse_peers(cls, v):
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v or []

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class ToleranceConfig(BaseSettings):
    """Plan-versus-actual tolerances (override required when exceeded)."""

    angle: float = Field(default=2.0, alias="TOLERANCE_ANGLE_DEG")
    position: float = Field(default=0.5, alias="TOLERANCE_POSITION_CM")
    mu: float = Field(default=2.0, alias="TOLERANCE_MU")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    debug: bool = Field(default=False, alias="DEBUG")
    mode: str = Field(default="study", alias="LINAC_MODE")
    version: str = Field(default="v10.0.0", alias="EMULATOR_VERSION")

    # Scenario fetch
    request_timeout: int = Field(default=30, alias="REQUEST_TIMEOUT")
    fetch_attempts: int = Field(default=3, alias="SCENARIO_FETCH_ATTEMPTS")

    # Component configurations
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    tolerance: ToleranceConfig = Field(default_factory=ToleranceConfig)

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower() in ("1", "true", "yes")
        return bool(v)

    @field_validator("mode", mode="before")
    @classmethod
    def parse_mode(cls, v):
        m = str(v or "").strip().lower()
        return m if m in ("study", "demo") else "study"

    def model_post_init(self, __context) -> None:
        # Initialize sub-configurations
        self.simulation = SimulationConfig()
        self.sync = SyncConfig()
        self.tolerance = ToleranceConfig()

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance.

    Raises:
        ConfigurationError: When an environment value cannot be parsed
    """
    global settings
    if settings is None:
        try:
            settings = Settings()
        except (SettingsError, ValidationError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
    return settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global settings
    settings = None


def validate_sync_settings() -> Dict[str, str]:
    """
    Report how the two displays will stay in sync with the current settings.

    Returns a dictionary with one status entry per transport plus an overall value.
    """
    status: Dict[str, str] = {}

    try:
        config = get_settings()

        status["store"] = "file" if config.sync.state_dir else "memory"
        if config.sync.endpoint:
            status["broadcast"] = "zmq" if config.sync.peers else "zmq_no_peers"
        else:
            status["broadcast"] = "disabled"

        status["overall"] = "live" if status["broadcast"] == "zmq" else "polling_only"
        return status

    except Exception as e:
        return {"overall": "configuration_error", "error": str(e)}


def print_configuration_summary():
    """Print a summary of the current configuration for debugging."""
    try:
        config = get_settings()
        print("=== LINAC Emulator Configuration Summary ===")
        print(f"Version: {config.version}")
        print(f"Mode: {config.mode}")
        print(f"Debug Mode: {config.debug}")
        print()
        print(
            f"Delivery window: {config.simulation.min_seconds}-{config.simulation.max_seconds}s "
            f"(>= {config.simulation.min_steps} steps)"
        )
        print(f"Arc flip threshold: {config.simulation.arc_flip_threshold_deg} deg")
        print()
        print(f"State dir: {config.sync.state_dir}")
        print(f"Sync endpoint: {config.sync.endpoint or '✗'}")
        print(f"Sync peers: {', '.join(config.sync.peers) or '✗'}")
        print("=" * 44)
    except Exception as e:
        print(f"Configuration error: {e}")
