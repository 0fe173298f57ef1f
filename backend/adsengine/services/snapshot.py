"""
Run snapshot — everything a run reads, loaded once at the start.

Goal settings, creatives, campaigns, ad-sets, the operating mode and the
winner thresholds are copied into frozen dataclasses so later settings edits
cannot skew a run that is already in flight. Creatives without a link of
their own inherit the goal's resolved destination.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from adsengine.config import Settings
from adsengine.goals import get_goal, resolve_destination
from adsengine.models import (
    AdCampaign, CampaignRole, Creative, CreativeStatus, DeliveryStatus,
    GoalSetting, UserAdsSettings,
)
from adsengine.modes import MomentumSettings, PulseSettings, resolve_mode_settings
from adsengine.services.winner_evaluator import WinnerThresholds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GoalSettingView:
    goal_key: str
    priority: int
    budget_hint: Optional[float]
    auto_scale: bool
    testing_enabled: bool
    scaling_enabled: bool


@dataclass(frozen=True)
class CreativeView:
    id: str
    creative_type: str
    url: str
    destination_url: Optional[str]
    caption: Optional[str]
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AdSetView:
    id: str
    creative_id: str
    platform_adset_id: str
    status: str
    last_metrics: Optional[dict]

    @property
    def is_active(self) -> bool:
        return self.status == DeliveryStatus.ACTIVE.value


@dataclass(frozen=True)
class CampaignView:
    id: str
    role: str
    platform_campaign_id: str
    daily_budget: float
    status: str
    created_at: datetime
    last_scaled_at: Optional[datetime]
    last_promoted_at: Optional[datetime]
    last_rotated_at: Optional[datetime]
    winner_creative_id: Optional[str]
    ad_sets: tuple[AdSetView, ...]

    @property
    def is_active(self) -> bool:
        return self.status == DeliveryStatus.ACTIVE.value

    @property
    def active_ad_sets(self) -> tuple[AdSetView, ...]:
        return tuple(a for a in self.ad_sets if a.is_active)


@dataclass(frozen=True)
class GoalPlan:
    setting: GoalSettingView
    creatives: tuple[CreativeView, ...]
    testing: Optional[CampaignView]
    scaling: Optional[CampaignView]
    # Resolved goal-level link used by creatives that carry none of their own
    destination_url: Optional[str] = None
    # Ready creatives left out because neither they nor the goal have a link
    unroutable_creatives: int = 0

    @property
    def goal_key(self) -> str:
        return self.setting.goal_key


@dataclass(frozen=True)
class RunSnapshot:
    user_id: str
    mode: Union[PulseSettings, MomentumSettings]
    thresholds: WinnerThresholds
    auto_pause_losers: bool
    lookback_days: int
    promotion_cooldown_hours: int
    goals: tuple[GoalPlan, ...]


def _campaign_view(row: AdCampaign) -> CampaignView:
    ad_sets = sorted(row.ad_sets, key=lambda a: (a.created_at, str(a.id)))
    return CampaignView(
        id=str(row.id),
        role=row.role,
        platform_campaign_id=row.platform_campaign_id,
        daily_budget=float(row.daily_budget),
        status=row.status,
        created_at=row.created_at,
        last_scaled_at=row.last_scaled_at,
        last_promoted_at=row.last_promoted_at,
        last_rotated_at=row.last_rotated_at,
        winner_creative_id=str(row.winner_creative_id) if row.winner_creative_id else None,
        ad_sets=tuple(
            AdSetView(
                id=str(a.id),
                creative_id=str(a.creative_id),
                platform_adset_id=a.platform_adset_id,
                status=a.status,
                last_metrics=dict(a.last_metrics) if a.last_metrics else None,
            )
            for a in ad_sets
        ),
    )


LINK_COLUMNS = (
    "smart_link_url",
    "presave_link_url",
    "one_click_link_url",
    "instagram_profile_url",
    "facebook_page_url",
)


def _goal_plan(
    g: GoalSetting,
    creatives: list[CreativeView],
    campaigns: dict[tuple[str, str], CampaignView],
    links: dict[str, Optional[str]],
) -> GoalPlan:
    goal = get_goal(g.goal_key)
    destination = resolve_destination(goal, links) if goal else None

    routable = []
    for c in creatives:
        if c.destination_url:
            routable.append(c)
        elif destination:
            routable.append(replace(c, destination_url=destination))

    return GoalPlan(
        setting=GoalSettingView(
            goal_key=g.goal_key,
            priority=g.priority,
            budget_hint=g.budget_hint,
            auto_scale=bool(g.auto_scale),
            testing_enabled=bool(g.testing_enabled),
            scaling_enabled=bool(g.scaling_enabled),
        ),
        creatives=tuple(routable),
        testing=campaigns.get((g.goal_key, CampaignRole.TESTING.value)),
        scaling=campaigns.get((g.goal_key, CampaignRole.SCALING.value)),
        destination_url=destination,
        unroutable_creatives=len(creatives) - len(routable),
    )


async def load_snapshot(db: AsyncSession, user_id: uuid.UUID, settings: Settings) -> RunSnapshot:
    """Read goals, creatives, campaigns and mode settings for one user."""
    ads_settings = (await db.execute(
        select(UserAdsSettings).where(UserAdsSettings.user_id == user_id)
    )).scalar_one_or_none()

    links = {}
    if ads_settings:
        ads_mode = ads_settings.ads_mode
        overrides = ads_settings.momentum_settings if ads_mode == "momentum" else ads_settings.pulse_settings
        auto_pause = bool(ads_settings.auto_pause_losers)
        links = {column: getattr(ads_settings, column) for column in LINK_COLUMNS}
    else:
        ads_mode, overrides, auto_pause = "pulse", None, True
    mode = resolve_mode_settings(ads_mode, overrides, settings)

    goal_rows = (await db.execute(
        select(GoalSetting)
        .where(GoalSetting.user_id == user_id, GoalSetting.is_active == True)  # noqa: E712
        .order_by(GoalSetting.priority.desc(), GoalSetting.goal_key.asc())
    )).scalars().all()

    creative_rows = (await db.execute(
        select(Creative)
        .where(Creative.user_id == user_id, Creative.status == CreativeStatus.READY.value)
        .order_by(Creative.created_at.asc(), Creative.id.asc())
    )).scalars().all()

    campaign_rows = (await db.execute(
        select(AdCampaign)
        .where(AdCampaign.user_id == user_id)
        .options(selectinload(AdCampaign.ad_sets))
    )).scalars().all()

    creatives_by_goal: dict[str, list[CreativeView]] = {}
    for c in creative_rows:
        creatives_by_goal.setdefault(c.goal_key, []).append(CreativeView(
            id=str(c.id),
            creative_type=c.creative_type,
            url=c.url,
            destination_url=c.destination_url,
            caption=c.caption,
            created_at=c.created_at,
        ))

    campaigns = {(c.goal_key, c.role): _campaign_view(c) for c in campaign_rows}

    goals = tuple(
        _goal_plan(g, creatives_by_goal.get(g.goal_key, []), campaigns, links)
        for g in goal_rows
    )

    logger.info(
        f"Snapshot for user {user_id}: mode={mode.mode}, {len(goals)} active goal(s), "
        f"{len(creative_rows)} ready creative(s), {len(campaign_rows)} campaign(s)"
    )

    return RunSnapshot(
        user_id=str(user_id),
        mode=mode,
        thresholds=WinnerThresholds(
            min_spend=settings.winner_min_spend,
            min_impressions=settings.winner_min_impressions,
            improvement_pct=settings.winner_improvement_pct,
        ),
        auto_pause_losers=auto_pause,
        lookback_days=settings.metrics_lookback_days,
        promotion_cooldown_hours=settings.promotion_cooldown_hours,
        goals=goals,
    )
