"""
Operating modes — Pulse (conservative) and Momentum (aggressive).

The user's stored overrides are merged over configured defaults and parsed
into exactly one of the two models, discriminated by ``mode``.
"""

import logging
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from adsengine.config import Settings

logger = logging.getLogger(__name__)


class PulseSettings(BaseModel):
    """Steady learning: small budget, bounded test lane, periodic rotation."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    mode: Literal["pulse"] = "pulse"
    daily_budget: float = Field(20.0, gt=0)
    test_lane_pct: float = Field(30.0, ge=0, le=50)
    rotation_days: int = Field(7, ge=1, le=14)
    scale_step_pct: float = Field(10.0, gt=0, le=50)
    cooldown_hours: int = Field(48, ge=1)
    max_daily_budget: float = Field(100.0, gt=0)

    @property
    def default_daily_budget(self) -> float:
        return self.daily_budget

    @property
    def scaling_start_budget(self) -> float:
        """Share of the daily budget left after the test lane."""
        return round(self.daily_budget * (100 - self.test_lane_pct) / 100, 2)


class MomentumSettings(BaseModel):
    """Scale winners quickly: higher budgets, bigger steps, shorter cooldown."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    mode: Literal["momentum"] = "momentum"
    starting_budget: float = Field(50.0, gt=0)
    max_daily_budget: float = Field(500.0, gt=0)
    scale_step_pct: float = Field(20.0, ge=10, le=30)
    cooldown_hours: int = Field(24, ge=6, le=72)

    @property
    def default_daily_budget(self) -> float:
        return self.starting_budget

    @property
    def scaling_start_budget(self) -> float:
        return self.starting_budget


ModeSettings = Annotated[Union[PulseSettings, MomentumSettings], Field(discriminator="mode")]

_mode_adapter = TypeAdapter(ModeSettings)


def default_mode_values(settings: Settings) -> dict[str, dict]:
    """Configured defaults for each mode, injected from the environment."""
    return {
        "pulse": {
            "daily_budget": settings.pulse_daily_budget,
            "test_lane_pct": settings.pulse_test_lane_pct,
            "rotation_days": settings.pulse_rotation_days,
            "scale_step_pct": settings.pulse_scale_step_pct,
            "cooldown_hours": settings.pulse_cooldown_hours,
            "max_daily_budget": settings.pulse_max_daily_budget,
        },
        "momentum": {
            "starting_budget": settings.momentum_starting_budget,
            "max_daily_budget": settings.momentum_max_daily_budget,
            "scale_step_pct": settings.momentum_scale_step_pct,
            "cooldown_hours": settings.momentum_cooldown_hours,
        },
    }


def resolve_mode_settings(
    ads_mode: Optional[str],
    overrides: Optional[dict],
    settings: Settings,
) -> Union[PulseSettings, MomentumSettings]:
    """
    Build the settings for the user's selected mode.
    Unknown modes fall back to Pulse; invalid overrides fall back to defaults.
    """
    mode = (ads_mode or "pulse").lower()
    defaults = default_mode_values(settings)
    if mode not in defaults:
        logger.warning(f"Unknown ads mode {ads_mode!r} — falling back to pulse")
        mode = "pulse"
        overrides = None

    user_values = {k: v for k, v in (overrides or {}).items() if v is not None}
    merged = {**defaults[mode], **user_values, "mode": mode}
    try:
        return _mode_adapter.validate_python(merged)
    except ValidationError as e:
        logger.warning(f"Invalid {mode} overrides {user_values} — using defaults: {e.error_count()} error(s)")
        return _mode_adapter.validate_python({**defaults[mode], "mode": mode})
