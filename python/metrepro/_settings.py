"""Application settings: display format, units and engine limits."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from metrepro._utils import deep_merge

logger = logging.getLogger(__name__)

DEFAULT_UNITS = ["Ml", "M²", "M³", "M³f", "Kg", "U", "Ens.", "For.", "Sac."]


class FormatSettings(BaseModel):
    decimal_places: int = Field(default=2, ge=0, le=10)
    decimal_separator: str = "."

    @field_validator("decimal_separator")
    @classmethod
    def check_separator(cls, value: str) -> str:
        if value not in (".", ","):
            raise ValueError("decimal_separator must be '.' or ','")
        return value


class UnitSettings(BaseModel):
    default_currency: str = "€"
    custom_units: list[str] = Field(default_factory=lambda: list(DEFAULT_UNITS))


class AdvancedSettings(BaseModel):
    enable_debug: bool = False
    max_undo_steps: int = Field(default=50, ge=0)


class Settings(BaseModel):
    """Settings consumed by the engine.  Unknown sections are ignored."""

    format: FormatSettings = Field(default_factory=FormatSettings)
    units: UnitSettings = Field(default_factory=UnitSettings)
    advanced: AdvancedSettings = Field(default_factory=AdvancedSettings)


def load_settings(data: dict[str, Any] | None = None) -> Settings:
    """Merge stored user settings over the defaults.

    Invalid stored data is logged and replaced by the defaults, so a corrupt
    settings blob never prevents the editor from starting.
    """
    defaults = Settings().model_dump()
    if not data:
        return Settings()
    merged = deep_merge(defaults, data)
    try:
        settings = Settings.model_validate(merged)
    except ValidationError as exc:
        logger.warning("Invalid settings, using defaults: %s", exc)
        return Settings()
    if not settings.units.custom_units:
        settings.units.custom_units = list(DEFAULT_UNITS)
    return settings
