from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Highest port number plus one; block spans are compared against this
PORT_SPACE = 65536


class PortBlockConfig(BaseModel):
    """Port block parameters. The defaults are fine for most hosts."""

    model_config = ConfigDict(frozen=True)

    # Size of one port block, anchor port included
    block_size: int = Field(default=100, gt=0)
    # Number of candidate blocks; trimmed to stay below the ephemeral range
    max_blocks: int = Field(default=10, gt=0)
    # Lowest port that will ever be handed out (as a block anchor)
    lower_bound: int = Field(default=10000, ge=0, le=PORT_SPACE - 1)
    # Overrides the OS used to pick the ephemeral range query ("linux", "darwin")
    os_override: Optional[str] = None
    reconcile_interval_s: float = Field(default=0.5, gt=0)
    auto_reconcile: bool = True
    take_timeout_s: Optional[float] = Field(default=None, gt=0)
    # Seeds the allocator's own random source; None draws from OS entropy
    seed: Optional[int] = None

    @field_validator("os_override")
    @classmethod
    def _normalize_os(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None


class MetricsConfig(BaseModel):
    enabled: bool = False
    bind: str = "127.0.0.1"
    port: int = Field(default=9316, gt=0, le=PORT_SPACE - 1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: Literal["json", "text"] = "json"

    @field_validator("level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class Config(BaseModel):
    portblock: PortBlockConfig = Field(default_factory=PortBlockConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def default_config() -> PortBlockConfig:
    """Return the default port block configuration."""
    return PortBlockConfig()


def expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR} patterns in configuration data."""
    if isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            return os.environ.get(var_name, data)
        return data
    elif isinstance(data, dict):
        return {k: expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [expand_env_vars(item) for item in data]
    return data


def load_config(config_path: str | Path) -> Config:
    """Load and validate configuration from YAML file.

    Prefers ruamel.yaml if available; falls back to PyYAML safe_load.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    raw_data = None
    try:
        from ruamel.yaml import YAML  # type: ignore
        yaml = YAML(typ="safe", pure=True)
        with config_path.open() as f:
            raw_data = yaml.load(f)
    except Exception:
        try:
            import yaml as pyyaml  # type: ignore
            with config_path.open() as f:
                raw_data = pyyaml.safe_load(f)
        except Exception as e:
            raise RuntimeError(f"Failed to load YAML config with ruamel and PyYAML: {e}")

    if raw_data is None:
        raw_data = {}

    expanded_data = expand_env_vars(raw_data)

    return Config(**expanded_data)
