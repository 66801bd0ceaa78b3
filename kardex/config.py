"""
Engine settings.
"""

import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from .core.default_scheme import final_exam_labels
from .core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class EngineSettings(BaseModel):
    """Tunable rules of the grading engine."""

    max_cycle: int = Field(default=10, ge=1, le=10)
    min_cycle: int = Field(default=1, ge=1, le=10)
    pass_threshold_raw: Decimal = Decimal("10.5")
    pass_threshold_rounded: int = 11
    weight_tolerance: Decimal = Field(default=Decimal("0.01"), gt=0)
    min_score: Decimal = Decimal("0")
    max_score: Decimal = Decimal("20")
    gated_labels: List[str] = Field(default_factory=lambda: list(final_exam_labels()))
    min_attendance_percent: float = Field(default=70.0, ge=0, le=100)
    allow_score_discard: bool = True
    lock_wait_timeout: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"

    @field_validator('log_level')
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @model_validator(mode='after')
    def _consistent_ranges(self) -> "EngineSettings":
        if self.min_cycle > self.max_cycle:
            raise ValueError("min_cycle cannot exceed max_cycle")
        if self.min_score >= self.max_score:
            raise ValueError("min_score must be below max_score")
        if not self.min_score <= self.pass_threshold_raw <= self.max_score:
            raise ValueError("pass_threshold_raw must lie on the score scale")
        return self


def load_settings(path: Optional[Union[str, Path]] = None,
                  overrides: Optional[Dict[str, Any]] = None) -> EngineSettings:
    """Load settings from an optional JSON file, then apply overrides."""
    data: Dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Configuration file is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration file must contain a JSON object")
        logger.info("Loaded configuration from %s", path)

    data.update(overrides or {})
    try:
        return EngineSettings(**data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            "Invalid engine configuration",
            details={'errors': [
                {'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']}
                for err in e.errors()
            ]}
        ) from e
