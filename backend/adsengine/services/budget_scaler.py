"""
Budget Scaler — step / cap / cooldown rules for scaling campaigns.
Pure: returns a verdict, the caller applies it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

from adsengine.modes import MomentumSettings, PulseSettings
from adsengine.services.winner_evaluator import WinnerThresholds

NONE = "none"
SCALE = "scale"
BLOCKED = "blocked"


@dataclass(frozen=True)
class ScalingCampaignState:
    """What the scaler needs to know about a scaling campaign."""
    daily_budget: float
    last_scaled_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScaleVerdict:
    kind: str
    new_budget: Optional[float] = None
    reason: Optional[str] = None
    details: dict = field(default_factory=dict)

    @classmethod
    def none(cls, reason: str, **details) -> "ScaleVerdict":
        return cls(kind=NONE, reason=reason, details=details)

    @classmethod
    def scale(cls, new_budget: float, **details) -> "ScaleVerdict":
        return cls(kind=SCALE, new_budget=new_budget, details=details)

    @classmethod
    def blocked(cls, reason: str, **details) -> "ScaleVerdict":
        return cls(kind=BLOCKED, reason=reason, details=details)


def scale_limits(mode: Union[PulseSettings, MomentumSettings]) -> tuple[float, int, float]:
    """(scale_step_pct, cooldown_hours, max_daily_budget) for the operating mode."""
    match mode:
        case PulseSettings(scale_step_pct=step, cooldown_hours=cooldown, max_daily_budget=cap):
            return step, cooldown, cap
        case MomentumSettings(scale_step_pct=step, cooldown_hours=cooldown, max_daily_budget=cap):
            return step, cooldown, cap
    raise TypeError(f"Unsupported mode settings: {type(mode).__name__}")


def decide(
    campaign: ScalingCampaignState,
    current_rate: Optional[float],
    baseline_rate: Optional[float],
    thresholds: WinnerThresholds,
    mode: Union[PulseSettings, MomentumSettings],
    now: datetime,
) -> ScaleVerdict:
    """
    Decide whether to raise a scaling campaign's daily budget.

    current_rate is the scaling campaign's own signal rate; baseline_rate is
    the testing median it must keep beating by the winner improvement margin.

    Checks run in a fixed order: the budget cap first, then the cooldown, then
    performance. A campaign already at its cap therefore reports
    blocked("at_cap") even while it is cooling down or underperforming, never
    the plain "none" verdict.
    """
    step_pct, cooldown_hours, max_budget = scale_limits(mode)
    budget = campaign.daily_budget

    if budget >= max_budget:
        return ScaleVerdict.blocked("at_cap", daily_budget=budget, max_daily_budget=max_budget)

    if campaign.last_scaled_at is not None:
        elapsed = now - campaign.last_scaled_at
        if elapsed < timedelta(hours=cooldown_hours):
            return ScaleVerdict.blocked("cooldown", cooldown_hours=cooldown_hours)

    if current_rate is None or baseline_rate is None:
        return ScaleVerdict.none("insufficient_data")
    required = baseline_rate * thresholds.multiplier
    if current_rate < required or current_rate <= 0:
        return ScaleVerdict.none(
            "no_sustained_improvement",
            current_rate=round(current_rate, 6),
            required_rate=round(required, 6),
        )

    new_budget = round(min(budget * (1 + step_pct / 100), max_budget), 2)
    if new_budget <= budget:
        return ScaleVerdict.blocked("at_cap", daily_budget=budget, max_daily_budget=max_budget)
    return ScaleVerdict.scale(
        new_budget,
        previous_budget=budget,
        new_budget=new_budget,
        scale_step_pct=step_pct,
        max_daily_budget=max_budget,
        current_rate=round(current_rate, 6),
        required_rate=round(required, 6),
    )
