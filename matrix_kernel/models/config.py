"""Kernel configuration."""

import os
from typing import Mapping, Optional

from croniter import croniter
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "MK_"

_ENV_FIELDS = {
    "DATA_DIR": "data_dir",
    "LEARNING_DB": "learning_db",
    "LOG_LEVEL": "log_level",
    "AGREEMENT_THRESHOLD": "agreement_threshold",
    "ANALYSIS_SCHEDULE": "analysis_schedule",
    "SAMPLE_FRACTION": "validation_sample_fraction",
    "SAMPLE_CAP": "validation_sample_cap",
    "MAX_CONCURRENCY": "max_concurrency",
    "COLLABORATOR_TIMEOUT": "collaborator_timeout_seconds",
}


class KernelConfig(BaseModel):
    """Configuration for the policy store, learning loop and validation sampler."""

    data_dir: str = "./data"
    learning_db: str = ":memory:"
    log_level: str = "INFO"
    agreement_threshold: float = Field(ge=0.0, le=1.0, default=0.8)
    analysis_schedule: str = "0 2 * * *"     # Daily at 02:00
    validation_sample_fraction: float = Field(ge=0.10, le=1.0, default=0.10)
    validation_sample_cap: int = Field(ge=1, default=1000)
    max_concurrency: int = Field(ge=1, default=4)
    collaborator_timeout_seconds: float = Field(gt=0, default=30.0)

    @field_validator("analysis_schedule")
    @classmethod
    def _check_schedule(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "KernelConfig":
        """Build a config from MK_* environment variables, defaults elsewhere."""
        environ = os.environ if environ is None else environ
        values = {}
        for suffix, field_name in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw is not None and raw != "":
                values[field_name] = raw
        return cls(**values)
