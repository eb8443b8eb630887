"""
Settings management.

Loads settings from an optional YAML file and applies environment
overrides on top.

Expected YAML format:
```yaml
quality_service:
  url: http://localhost:8080
  timeout_seconds: 30
  workers: 4
identification_service:
  url: http://localhost:8081
  timeout_seconds: 30
issuance:
  max_attempts: 5
metrics:
  port: 8000
```
"""

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "ENROLMENT_QUALITY_URL": ("quality_service", "url"),
    "ENROLMENT_QUALITY_TIMEOUT": ("quality_service", "timeout_seconds"),
    "ENROLMENT_QUALITY_WORKERS": ("quality_service", "workers"),
    "ENROLMENT_IDENTIFY_URL": ("identification_service", "url"),
    "ENROLMENT_IDENTIFY_TIMEOUT": ("identification_service", "timeout_seconds"),
    "ENROLMENT_ISSUANCE_MAX_ATTEMPTS": ("issuance", "max_attempts"),
    "METRICS_PORT": ("metrics", "port"),
}


DEFAULTS: dict[str, dict[str, Any]] = {
    "quality_service": {"url": "http://localhost:8080", "timeout_seconds": 30.0, "workers": 4},
    "identification_service": {"url": "http://localhost:8081", "timeout_seconds": 30.0, "workers": 1},
    "issuance": {"max_attempts": 5},
    "metrics": {"port": 8000, "enabled": False},
}


class ServiceSettings(BaseModel):
    url: str = Field(..., min_length=1)
    timeout_seconds: float = Field(30.0, gt=0, le=300)
    workers: int = Field(1, ge=1, le=32)


class IssuanceSettings(BaseModel):
    max_attempts: int = Field(5, ge=1, le=50)


class MetricsSettings(BaseModel):
    port: int = Field(8000, ge=1, le=65535)
    enabled: bool = False


class EnrolmentSettings(BaseModel):
    """
    Top-level settings for the enrolment registry.

    Attributes:
        quality_service: Quality scoring service endpoint and worker pool size
        identification_service: Identification (deduplication) service endpoint
        issuance: Identity issuance retry policy
        metrics: Prometheus endpoint
    """

    quality_service: ServiceSettings = Field(
        default_factory=lambda: ServiceSettings(**DEFAULTS["quality_service"])
    )
    identification_service: ServiceSettings = Field(
        default_factory=lambda: ServiceSettings(**DEFAULTS["identification_service"])
    )
    issuance: IssuanceSettings = Field(default_factory=IssuanceSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)


class SettingsLoader:
    """
    Loads EnrolmentSettings from YAML plus environment overrides.
    """

    def __init__(self, config_path: str | Path | None = None, environ: dict[str, str] | None = None):
        """
        Initialize the settings loader.

        Args:
            config_path: Path to the YAML file (optional; defaults only when omitted)
            environ: Environment mapping (defaults to os.environ)

        Raises:
            FileNotFoundError: If config_path is given but does not exist
        """
        self.config_path = Path(config_path) if config_path else None
        if self.config_path is not None and not self.config_path.exists():
            raise FileNotFoundError(f"Settings file not found: {config_path}")
        self.environ = os.environ if environ is None else environ

    def load(self) -> EnrolmentSettings:
        """
        Build settings.

        Returns:
            Validated EnrolmentSettings

        Raises:
            ValueError: If the YAML is not a mapping
            pydantic.ValidationError: If a value is out of range
        """
        raw = copy.deepcopy(DEFAULTS)
        if self.config_path is not None:
            with open(self.config_path) as f:
                loaded = yaml.safe_load(f)
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ValueError("Settings file must contain a mapping at the top level")
            for section, values in loaded.items():
                if section not in raw:
                    raise ValueError(f"Unknown settings section '{section}'")
                if not isinstance(values, dict):
                    raise ValueError(f"Settings section '{section}' must be a mapping")
                raw[section].update(values)

        for env_name, (section, key) in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value:
                raw[section][key] = value

        return EnrolmentSettings.model_validate(raw)


def load_settings(config_path: str | Path | None = None) -> EnrolmentSettings:
    """Load settings from ``config_path`` (or ENROLMENT_CONFIG) and the environment."""
    path = config_path or os.getenv("ENROLMENT_CONFIG")
    return SettingsLoader(path).load()
