"""
Executors — apply (live) or describe (dry-run) the orchestrator's verdicts.

Both executors expose the same coroutine methods and return an Outcome
(message + details) that the orchestrator records as one action. The live
executor issues platform calls one at a time and stages the matching
campaign / ad-set rows on the session; the rows are committed together with
the action record. The dry-run executor never mutates anything.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from adsengine.goals import Goal
from adsengine.models import AdCampaign, AdSet, CampaignRole, DeliveryStatus
from adsengine.platform_client import MetaAdsClient
from adsengine.services.snapshot import AdSetView, CampaignView, CreativeView
from adsengine.services.winner_evaluator import AdSetMetric, WinnerVerdict

logger = logging.getLogger(__name__)

SOURCE_PLATFORM = "platform"
SOURCE_CACHE = "cache"


@dataclass(frozen=True)
class Outcome:
    message: str
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MetricsFetch:
    """Metrics keyed by AdSet id, plus the ad-sets that had none."""
    metrics: dict[str, AdSetMetric]
    source: str
    missing: tuple[str, ...] = ()


def split_budget(total: float, parts: int) -> float:
    """Per-ad-set daily budget for an ABO campaign."""
    return round(total / max(parts, 1), 2)


def campaign_name(goal: Goal, role: str) -> str:
    return f"[Auto] {goal.title} - {role.capitalize()}"


def ad_set_name(goal: Goal, creative: CreativeView) -> str:
    return f"[Auto] {goal.key} - {creative.creative_type} - {creative.id[:8]}"


async def fetch_platform_metrics(
    client: MetaAdsClient,
    goal: Goal,
    ad_sets: Sequence[AdSetView],
    lookback_days: int,
) -> MetricsFetch:
    raw = await client.fetch_metrics(
        [a.platform_adset_id for a in ad_sets], goal.core_signal, lookback_days,
    )
    metrics = {}
    for a in ad_sets:
        m = raw.get(a.platform_adset_id)
        if m is None:
            continue
        metrics[a.id] = AdSetMetric(
            ad_set_id=a.id,
            creative_id=a.creative_id,
            spend=m.spend,
            impressions=m.impressions,
            core_signal_count=m.core_signal_count,
        )
    missing = tuple(a.id for a in ad_sets if a.id not in metrics)
    return MetricsFetch(metrics=metrics, source=SOURCE_PLATFORM, missing=missing)


def cached_metrics(ad_sets: Sequence[AdSetView]) -> MetricsFetch:
    """Last metrics stored on the ad-set rows by a previous live run."""
    metrics = {}
    for a in ad_sets:
        if not a.last_metrics:
            continue
        metrics[a.id] = AdSetMetric(
            ad_set_id=a.id,
            creative_id=a.creative_id,
            spend=float(a.last_metrics.get("spend") or 0.0),
            impressions=int(a.last_metrics.get("impressions") or 0),
            core_signal_count=int(a.last_metrics.get("core_signal_count") or 0),
        )
    missing = tuple(a.id for a in ad_sets if a.id not in metrics)
    return MetricsFetch(metrics=metrics, source=SOURCE_CACHE, missing=missing)


class LiveExecutor:
    """Applies verdicts through the ad platform and stages the DB rows."""

    dry_run = False

    def __init__(
        self,
        db: AsyncSession,
        client: MetaAdsClient,
        user_id: uuid.UUID,
        now: datetime,
        lookback_days: int = 7,
    ):
        self.db = db
        self.client = client
        self.user_id = user_id
        self.now = now
        self.lookback_days = lookback_days

    # ── Metrics ──────────────────────────────────────────────────────

    async def fetch_metrics(self, goal: Goal, ad_sets: Sequence[AdSetView]) -> MetricsFetch:
        fetch = await fetch_platform_metrics(self.client, goal, ad_sets, self.lookback_days)
        await self._cache_metrics(fetch)
        return fetch

    async def _cache_metrics(self, fetch: MetricsFetch) -> None:
        for ad_set_id, m in fetch.metrics.items():
            row = await self.db.get(AdSet, uuid.UUID(ad_set_id))
            if row is None:
                continue
            row.last_metrics = {
                "spend": m.spend,
                "impressions": m.impressions,
                "core_signal_count": m.core_signal_count,
            }
            row.metrics_synced_at = self.now

    # ── Mutations ────────────────────────────────────────────────────

    async def create_testing_campaign(
        self,
        goal: Goal,
        creatives: Sequence[CreativeView],
        daily_budget: float,
    ) -> Outcome:
        per_ad_set = split_budget(daily_budget, len(creatives))
        # Testing runs ABO: budgets live on the ad-sets
        platform_campaign_id = await self.client.create_campaign(
            campaign_name(goal, CampaignRole.TESTING.value), goal.objective,
        )
        campaign = AdCampaign(
            id=uuid.uuid4(),
            user_id=self.user_id,
            goal_key=goal.key,
            role=CampaignRole.TESTING.value,
            platform_campaign_id=platform_campaign_id,
            daily_budget=daily_budget,
            status=DeliveryStatus.ACTIVE.value,
            last_rotated_at=self.now,
            created_at=self.now,
        )
        self.db.add(campaign)
        await self.db.flush()

        created = await self._add_ad_sets(campaign, goal, creatives, per_ad_set)
        return Outcome(
            message=f"Created testing campaign for {goal.key} with {len(created)} ad-set(s)",
            details={
                "platform_campaign_id": platform_campaign_id,
                "daily_budget": daily_budget,
                "adset_budget": per_ad_set,
                "budget_type": "ABO",
                "ad_sets": len(created),
                "creative_ids": [c.id for c in creatives],
            },
        )

    async def rotate_creatives(
        self,
        testing: CampaignView,
        goal: Goal,
        creatives: Sequence[CreativeView],
    ) -> Outcome:
        per_ad_set = split_budget(testing.daily_budget, len(testing.active_ad_sets) + len(creatives))
        campaign = await self.db.get(AdCampaign, uuid.UUID(testing.id))
        await self._add_ad_sets(campaign, goal, creatives, per_ad_set)
        campaign.last_rotated_at = self.now
        return Outcome(
            message=f"Rotated {len(creatives)} new creative(s) into the {goal.key} testing campaign",
            details={"creative_ids": [c.id for c in creatives], "adset_budget": per_ad_set},
        )

    async def promote_winner(
        self,
        goal: Goal,
        verdict: WinnerVerdict,
        creative: CreativeView,
        testing_ad_set: AdSetView,
        scaling: Optional[CampaignView],
        start_budget: float,
    ) -> Outcome:
        details = verdict.to_details()
        if scaling is None:
            # Scaling runs CBO: one campaign budget shared by its ad-sets
            platform_campaign_id = await self.client.create_campaign(
                campaign_name(goal, CampaignRole.SCALING.value), goal.objective, daily_budget=start_budget,
            )
            campaign = AdCampaign(
                id=uuid.uuid4(),
                user_id=self.user_id,
                goal_key=goal.key,
                role=CampaignRole.SCALING.value,
                platform_campaign_id=platform_campaign_id,
                daily_budget=start_budget,
                status=DeliveryStatus.ACTIVE.value,
                created_at=self.now,
            )
            self.db.add(campaign)
            await self.db.flush()
            details.update({"scaling_campaign": "created", "daily_budget": start_budget, "budget_type": "CBO"})
        else:
            campaign = await self.db.get(AdCampaign, uuid.UUID(scaling.id))
            details.update({"scaling_campaign": "updated", "daily_budget": campaign.daily_budget})

        await self._add_ad_sets(campaign, goal, [creative], None)
        # Stamped before the pause so an interrupted promotion is still recognised
        campaign.winner_creative_id = uuid.UUID(creative.id)
        campaign.last_promoted_at = self.now

        await self._pause_graduated(testing_ad_set)
        details["platform_campaign_id"] = campaign.platform_campaign_id
        return Outcome(
            message=f"Promoted creative {creative.id} to the {goal.key} scaling campaign",
            details=details,
        )

    async def finish_promotion(self, scaling: CampaignView, testing_ad_set: AdSetView) -> Outcome:
        """Complete a promotion whose scaling ad-set exists but whose testing ad-set still runs."""
        await self._pause_graduated(testing_ad_set)
        campaign = await self.db.get(AdCampaign, uuid.UUID(scaling.id))
        if scaling.winner_creative_id != testing_ad_set.creative_id:
            campaign.winner_creative_id = uuid.UUID(testing_ad_set.creative_id)
            campaign.last_promoted_at = self.now
        return Outcome(
            message=f"Completed promotion of creative {testing_ad_set.creative_id}: paused its testing ad-set",
            details=_finish_details(scaling, testing_ad_set),
        )

    async def _pause_graduated(self, testing_ad_set: AdSetView) -> None:
        await self.client.pause_ad_set(testing_ad_set.platform_adset_id)
        graduated = await self.db.get(AdSet, uuid.UUID(testing_ad_set.id))
        if graduated is not None:
            graduated.status = DeliveryStatus.PAUSED.value

    async def scale_budget(self, scaling: CampaignView, new_budget: float, details: dict) -> Outcome:
        await self.client.update_campaign_budget(scaling.platform_campaign_id, new_budget)
        campaign = await self.db.get(AdCampaign, uuid.UUID(scaling.id))
        campaign.daily_budget = new_budget
        campaign.last_scaled_at = self.now
        return Outcome(
            message=f"Scaled daily budget {scaling.daily_budget:.2f} -> {new_budget:.2f}",
            details=dict(details),
        )

    async def pause_ad_set(self, ad_set: AdSetView, metric: AdSetMetric) -> Outcome:
        await self.client.pause_ad_set(ad_set.platform_adset_id)
        row = await self.db.get(AdSet, uuid.UUID(ad_set.id))
        if row is not None:
            row.status = DeliveryStatus.PAUSED.value
        return Outcome(
            message=f"Paused ad-set {ad_set.platform_adset_id}: spent {metric.spend:.2f} with no core signals",
            details=_loser_details(ad_set, metric),
        )

    async def _add_ad_sets(
        self,
        campaign: AdCampaign,
        goal: Goal,
        creatives: Sequence[CreativeView],
        per_ad_set_budget: Optional[float],
    ) -> list[AdSet]:
        rows = []
        for creative in creatives:
            platform_ad_set = await self.client.create_ad_set_with_creative(
                campaign_id=campaign.platform_campaign_id,
                name=ad_set_name(goal, creative),
                optimization_goal=goal.optimization_goal,
                creative_type=creative.creative_type,
                media_url=creative.url,
                destination_url=creative.destination_url,
                message=creative.caption,
                daily_budget=per_ad_set_budget,
            )
            row = AdSet(
                id=uuid.uuid4(),
                campaign_id=campaign.id,
                creative_id=uuid.UUID(creative.id),
                platform_adset_id=platform_ad_set.adset_id,
                platform_ad_id=platform_ad_set.ad_id,
                status=DeliveryStatus.ACTIVE.value,
            )
            self.db.add(row)
            # Flush per ad-set so a later failure still leaves earlier ones tracked
            await self.db.flush()
            rows.append(row)
        return rows


class DryRunExecutor:
    """
    Describes what the live executor would do. Metrics come from the platform
    (read-only) when a client is available, otherwise from the cached rows.
    """

    dry_run = True

    def __init__(self, client: Optional[MetaAdsClient] = None, lookback_days: int = 7):
        self.client = client
        self.lookback_days = lookback_days

    async def fetch_metrics(self, goal: Goal, ad_sets: Sequence[AdSetView]) -> MetricsFetch:
        if self.client is not None:
            return await fetch_platform_metrics(self.client, goal, ad_sets, self.lookback_days)
        return cached_metrics(ad_sets)

    async def create_testing_campaign(
        self,
        goal: Goal,
        creatives: Sequence[CreativeView],
        daily_budget: float,
    ) -> Outcome:
        per_ad_set = split_budget(daily_budget, len(creatives))
        return _simulated(
            f"Would create testing campaign for {goal.key} with {len(creatives)} ad-set(s)",
            {
                "daily_budget": daily_budget,
                "adset_budget": per_ad_set,
                "budget_type": "ABO",
                "ad_sets": len(creatives),
                "creative_ids": [c.id for c in creatives],
            },
        )

    async def rotate_creatives(
        self,
        testing: CampaignView,
        goal: Goal,
        creatives: Sequence[CreativeView],
    ) -> Outcome:
        per_ad_set = split_budget(testing.daily_budget, len(testing.active_ad_sets) + len(creatives))
        return _simulated(
            f"Would rotate {len(creatives)} new creative(s) into the {goal.key} testing campaign",
            {"creative_ids": [c.id for c in creatives], "adset_budget": per_ad_set},
        )

    async def promote_winner(
        self,
        goal: Goal,
        verdict: WinnerVerdict,
        creative: CreativeView,
        testing_ad_set: AdSetView,
        scaling: Optional[CampaignView],
        start_budget: float,
    ) -> Outcome:
        details = verdict.to_details()
        if scaling is None:
            details.update({"scaling_campaign": "created", "daily_budget": start_budget, "budget_type": "CBO"})
        else:
            details.update({"scaling_campaign": "updated", "daily_budget": scaling.daily_budget})
        return _simulated(f"Would promote creative {creative.id} to the {goal.key} scaling campaign", details)

    async def finish_promotion(self, scaling: CampaignView, testing_ad_set: AdSetView) -> Outcome:
        return _simulated(
            f"Would complete promotion of creative {testing_ad_set.creative_id}: pause its testing ad-set",
            _finish_details(scaling, testing_ad_set),
        )

    async def scale_budget(self, scaling: CampaignView, new_budget: float, details: dict) -> Outcome:
        return _simulated(f"Would scale daily budget {scaling.daily_budget:.2f} -> {new_budget:.2f}", details)

    async def pause_ad_set(self, ad_set: AdSetView, metric: AdSetMetric) -> Outcome:
        return _simulated(
            f"Would pause ad-set {ad_set.platform_adset_id}: spent {metric.spend:.2f} with no core signals",
            _loser_details(ad_set, metric),
        )


def _simulated(message: str, details: dict) -> Outcome:
    return Outcome(message=message, details={**details, "dry_run": True})


def _loser_details(ad_set: AdSetView, metric: AdSetMetric) -> dict:
    return {
        "ad_set_id": ad_set.id,
        "platform_adset_id": ad_set.platform_adset_id,
        "creative_id": ad_set.creative_id,
        "spend": round(metric.spend, 2),
        "impressions": metric.impressions,
        "core_signal_count": metric.core_signal_count,
    }


def _finish_details(scaling: CampaignView, testing_ad_set: AdSetView) -> dict:
    return {
        "resumed": True,
        "creative_id": testing_ad_set.creative_id,
        "ad_set_id": testing_ad_set.id,
        "platform_adset_id": testing_ad_set.platform_adset_id,
        "platform_campaign_id": scaling.platform_campaign_id,
    }
