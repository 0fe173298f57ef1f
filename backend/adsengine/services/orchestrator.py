"""
Ads Orchestrator — the per-user control loop.

One run:
1. Take the per-user run lock (the `running` OrchestratorRun row)
2. Load an immutable snapshot of goals, creatives, campaigns and mode settings
3. For each active goal (priority desc): create a testing campaign or fill
   it with missing creatives, finish any interrupted promotion, evaluate a
   winner, promote it, scale the scaling budget and pause losers. A failing
   goal records an error action and the loop moves on to the next goal.
4. Finalize counters and status, which releases the lock. If bookkeeping
   itself fails the run is still marked failed so the lock is freed.

Live and dry-run share this control flow; only the executor differs.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsengine.config import Settings, get_settings
from adsengine.crypto import decrypt_value
from adsengine.errors import (
    AdPlatformError, AlreadyRunning, CredentialExpired, MissingCredential,
    OrchestratorError, PreconditionError, UserNotFound,
)
from adsengine.goals import Goal, get_goal
from adsengine.models import (
    ActionStatus, ActionType, AdPlatformCredential, GoalSetting, RunStatus,
    RunType, User, UserAdsSettings,
)
from adsengine.modes import PulseSettings
from adsengine.platform_client import MetaAdsClient, create_platform_client
from adsengine.services import budget_scaler
from adsengine.services.executors import DryRunExecutor, LiveExecutor
from adsengine.services.run_ledger import ActionRecord, RunLedger
from adsengine.services.snapshot import GoalPlan, RunSnapshot, load_snapshot
from adsengine.services.token_service import get_platform_client_with_fresh_token, token_is_expired
from adsengine.services.winner_evaluator import (
    AdSetMetric, WinnerThresholds, compute_rate, evaluate, find_losers, median_rate,
)
from adsengine.utils import utcnow

logger = logging.getLogger(__name__)

Executor = Union[LiveExecutor, DryRunExecutor]
ClientFactory = Callable[[AdPlatformCredential, AsyncSession, bool], Awaitable[MetaAdsClient]]


async def default_client_factory(cred: AdPlatformCredential, db: AsyncSession, dry_run: bool) -> MetaAdsClient:
    """Live runs refresh the token first; dry-runs never write, not even the credential."""
    if not dry_run:
        return await get_platform_client_with_fresh_token(cred, db)
    if token_is_expired(cred):
        raise CredentialExpired(f"Ad platform token for user {cred.user_id} has expired")
    return create_platform_client(
        access_token=decrypt_value(cred.access_token),
        ad_account_id=cred.ad_account_id,
        page_id=cred.page_id,
    )


@dataclass
class RunResult:
    run_id: uuid.UUID
    run_type: str
    status: str
    summary: dict
    actions: list[ActionRecord] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def dry_run(self) -> bool:
        return self.run_type == RunType.DRY_RUN.value

    def to_response(self) -> dict:
        response = {
            "success": self.status != RunStatus.FAILED.value,
            "run_id": str(self.run_id),
            "dry_run": self.dry_run,
            "run_type": self.run_type,
            "status": self.status,
            "summary": self.summary,
            "actions": [a.to_dict() for a in self.actions],
        }
        if self.error_message:
            response["error"] = self.error_message
        return response


class AdsOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.client_factory = client_factory or default_client_factory
        self.clock = clock or utcnow

    # ══════════════════════════════════════════════════════════════════
    #  Entry points
    # ══════════════════════════════════════════════════════════════════

    async def run(self, user_id: uuid.UUID, dry_run: bool = False, trigger: str = RunType.MANUAL.value) -> RunResult:
        """
        Run orchestration for one user.

        Raises UserNotFound for an unknown or inactive user (no run row is
        written) and AlreadyRunning when another run holds the lock. Every
        other failure is recorded on the run itself.
        """
        if dry_run:
            run_type = RunType.DRY_RUN.value
        elif trigger in (RunType.SCHEDULED.value, RunType.MANUAL.value):
            run_type = trigger
        else:
            raise ValueError(f"Unknown trigger: {trigger!r}")

        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user is None or not user.is_active:
                raise UserNotFound(user_id)

            ledger = await RunLedger.open(
                db, user_id, run_type,
                stale_after=timedelta(minutes=self.settings.run_lock_timeout_minutes),
            )
            try:
                precondition_error = await self._execute(db, ledger, user_id, dry_run)
                await ledger.finalize(precondition_error)
            except (Exception, asyncio.CancelledError) as e:
                # The running row is the lock: never leave it behind
                logger.exception(f"Run {ledger.run_id} could not be finalized for user {user_id}")
                await ledger.release(f"Run aborted: {type(e).__name__}")
                raise

            return RunResult(
                run_id=ledger.run_id,
                run_type=run_type,
                status=ledger.run.status,
                summary=ledger.summary(),
                actions=list(ledger.actions),
                error_message=precondition_error,
            )

    async def _execute(self, db: AsyncSession, ledger: RunLedger, user_id: uuid.UUID, dry_run: bool) -> Optional[str]:
        """Process every goal; returns the precondition error that failed the run, if any."""
        try:
            now = self.clock()
            snapshot = await load_snapshot(db, user_id, self.settings)
            ledger.run.ads_mode = snapshot.mode.mode
            executor = await self._build_executor(db, user_id, now, dry_run, snapshot)
            for plan in snapshot.goals:
                await self._process_goal(db, ledger, executor, snapshot, plan, now)
        except (PreconditionError, CredentialExpired) as e:
            logger.warning(f"Run {ledger.run_id} aborted for user {user_id}: {e}")
            await ledger.record(
                ActionType.ERROR, None, ActionStatus.FAILED, str(e),
                {"reason": type(e).__name__},
            )
            return str(e)
        except Exception as e:
            logger.exception(f"Run {ledger.run_id} crashed for user {user_id}")
            await db.rollback()
            await ledger.record(
                ActionType.ERROR, None, ActionStatus.FAILED, f"{type(e).__name__}: {e}",
                {"reason": "unexpected_error"},
            )
            return f"Unexpected error: {type(e).__name__}"
        return None

    async def run_scheduled_batch(self) -> dict:
        """Scheduled run for every active user with ads enabled and at least one active goal."""
        async with self.session_factory() as db:
            user_ids = await eligible_user_ids(db)
        logger.info(f"Scheduled orchestration for {len(user_ids)} user(s)")

        semaphore = asyncio.Semaphore(max(self.settings.cron_max_concurrency, 1))

        async def _one(user_id: uuid.UUID) -> dict:
            async with semaphore:
                try:
                    result = await self.run(user_id, trigger=RunType.SCHEDULED.value)
                    return {
                        "user_id": str(user_id),
                        "run_id": str(result.run_id),
                        "status": result.status,
                        "summary": result.summary,
                    }
                except AlreadyRunning as e:
                    return {"user_id": str(user_id), "status": "already_running", "run_id": str(e.run_id) if e.run_id else None}
                except OrchestratorError as e:
                    return {"user_id": str(user_id), "status": "error", "error": str(e)}
                except Exception as e:
                    logger.error(f"Scheduled run failed for user {user_id}: {e}", exc_info=True)
                    return {"user_id": str(user_id), "status": "error", "error": "Internal error"}

        results = await asyncio.gather(*(_one(uid) for uid in user_ids))
        return {"users": len(user_ids), "results": list(results)}

    # ══════════════════════════════════════════════════════════════════
    #  Setup
    # ══════════════════════════════════════════════════════════════════

    async def _build_executor(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        now: datetime,
        dry_run: bool,
        snapshot: RunSnapshot,
    ) -> Executor:
        cred = (await db.execute(
            select(AdPlatformCredential).where(AdPlatformCredential.user_id == user_id)
        )).scalar_one_or_none()

        if dry_run:
            client = None
            if cred is not None:
                try:
                    client = await self.client_factory(cred, db, True)
                except CredentialExpired as e:
                    logger.info(f"Dry-run for user {user_id} falls back to cached metrics: {e}")
            return DryRunExecutor(client=client, lookback_days=snapshot.lookback_days)

        if cred is None:
            raise MissingCredential(user_id)
        client = await self.client_factory(cred, db, False)
        return LiveExecutor(db, client, user_id, now, lookback_days=snapshot.lookback_days)

    # ══════════════════════════════════════════════════════════════════
    #  Per-goal processing
    # ══════════════════════════════════════════════════════════════════

    async def _process_goal(
        self,
        db: AsyncSession,
        ledger: RunLedger,
        executor: Executor,
        snapshot: RunSnapshot,
        plan: GoalPlan,
        now: datetime,
    ) -> None:
        try:
            await self._run_goal(ledger, executor, snapshot, plan, now)
        except Exception as e:
            logger.error(f"Goal {plan.goal_key} failed in run {ledger.run_id}: {e}", exc_info=True)
            if isinstance(e, SQLAlchemyError):
                await db.rollback()
            details = {"error_type": type(e).__name__}
            if isinstance(e, AdPlatformError):
                details.update({"status_code": e.status_code, "code": e.code})
            await ledger.record(ActionType.ERROR, plan.goal_key, ActionStatus.FAILED, str(e) or type(e).__name__, details)

    async def _run_goal(
        self,
        ledger: RunLedger,
        executor: Executor,
        snapshot: RunSnapshot,
        plan: GoalPlan,
        now: datetime,
    ) -> None:
        setting = plan.setting
        goal_key = plan.goal_key

        goal = get_goal(goal_key)
        if goal is None:
            await _skip(ledger, goal_key, "unknown_goal", f"Unknown goal {goal_key!r}")
            return

        testing, scaling = plan.testing, plan.scaling

        if not setting.testing_enabled and scaling is None:
            await _skip(ledger, goal_key, "testing_disabled", "Testing is disabled and there is no scaling campaign")
            return

        if not plan.creatives:
            if plan.unroutable_creatives:
                await _skip(
                    ledger, goal_key, "missing_destination",
                    f"No destination link for {goal.destination_kind}; ads were not built",
                    destination_kind=goal.destination_kind, creatives=plan.unroutable_creatives,
                )
            else:
                await _skip(ledger, goal_key, "missing_creatives", "No ready creatives for this goal")
            return

        if testing is None and setting.testing_enabled:
            await self._create_testing(ledger, executor, snapshot, plan, goal)
            return

        if testing is not None and setting.testing_enabled:
            await self._fill_testing(ledger, executor, snapshot, plan, goal, now)

        graduated = await self._finish_promotions(ledger, executor, plan)

        testing_sets = tuple(a for a in testing.active_ad_sets if a.id not in graduated) if testing else ()
        scaling_sets = scaling.active_ad_sets if scaling else ()
        if not testing_sets and not scaling_sets:
            logger.info(f"Goal {goal_key}: no active ad-sets to evaluate")
            return

        fetch = await executor.fetch_metrics(goal, testing_sets + scaling_sets)
        if not fetch.metrics:
            await _skip(
                ledger, goal_key, "missing_metrics",
                "No metrics available; winner, scaling and pause checks skipped",
                note="No platform access and no cached metrics" if executor.dry_run else None,
                source=fetch.source,
            )
            return
        if fetch.missing:
            logger.info(f"Goal {goal_key}: {len(fetch.missing)} ad-set(s) without metrics ({fetch.source})")

        testing_metrics = [fetch.metrics[a.id] for a in testing_sets if a.id in fetch.metrics]
        scaling_metrics = [fetch.metrics[a.id] for a in scaling_sets if a.id in fetch.metrics]

        promoted_ad_set = await self._maybe_promote(ledger, executor, snapshot, plan, goal, testing_metrics, now)

        if scaling is not None and promoted_ad_set is None and not graduated:
            await self._maybe_scale(ledger, executor, snapshot, plan, testing_metrics, scaling_metrics, now)

        if snapshot.auto_pause_losers:
            await self._pause_losers(ledger, executor, snapshot, plan, testing_metrics, promoted_ad_set)

    async def _create_testing(
        self,
        ledger: RunLedger,
        executor: Executor,
        snapshot: RunSnapshot,
        plan: GoalPlan,
        goal: Goal,
    ) -> None:
        in_scaling = {a.creative_id for a in plan.scaling.active_ad_sets} if plan.scaling else set()
        creatives = [c for c in plan.creatives if c.id not in in_scaling]
        if not creatives:
            await _skip(ledger, plan.goal_key, "missing_creatives", "All ready creatives are already running in scaling")
            return
        budget = plan.setting.budget_hint or snapshot.mode.default_daily_budget
        outcome = await executor.create_testing_campaign(goal, creatives, budget)
        await ledger.record(
            ActionType.CREATE_TESTING_CAMPAIGN, plan.goal_key, ActionStatus.SUCCESS,
            outcome.message, outcome.details,
        )

    async def _fill_testing(
        self,
        ledger: RunLedger,
        executor: Executor,
        snapshot: RunSnapshot,
        plan: GoalPlan,
        goal: Goal,
        now: datetime,
    ) -> None:
        """
        Add ad-sets for ready creatives that never had one.

        Creatives that predate the testing campaign were meant to be in it
        (its creation was cut short) and are added in every mode. Newer
        uploads join on the Pulse rotation cadence only.
        """
        mode = snapshot.mode
        testing = plan.testing
        if not testing.is_active:
            return

        used = {a.creative_id for c in (plan.testing, plan.scaling) if c for a in c.ad_sets}
        fresh = [c for c in plan.creatives if c.id not in used]
        if not fresh:
            return

        rotation_due = False
        if isinstance(mode, PulseSettings):
            last_rotated = testing.last_rotated_at or testing.created_at
            rotation_due = not last_rotated or now - last_rotated >= timedelta(days=mode.rotation_days)
        if not rotation_due:
            fresh = [c for c in fresh if c.created_at is None or c.created_at <= testing.created_at]
            if not fresh:
                return

        outcome = await executor.rotate_creatives(testing, goal, fresh)
        await ledger.record(
            ActionType.ROTATE_CREATIVES, plan.goal_key, ActionStatus.SUCCESS,
            outcome.message, outcome.details,
        )

    async def _finish_promotions(self, ledger: RunLedger, executor: Executor, plan: GoalPlan) -> set[str]:
        """
        Pause testing ad-sets whose creative already runs in scaling, i.e. a
        promotion that failed after the scaling ad-set was created. Returns
        the ids of the testing ad-sets handled.
        """
        if plan.testing is None or plan.scaling is None:
            return set()
        in_scaling = {a.creative_id for a in plan.scaling.active_ad_sets}
        finished = set()
        for ad_set in plan.testing.active_ad_sets:
            if ad_set.creative_id not in in_scaling:
                continue
            outcome = await executor.finish_promotion(plan.scaling, ad_set)
            await ledger.record(
                ActionType.PROMOTE_WINNER, plan.goal_key, ActionStatus.SUCCESS,
                outcome.message, outcome.details,
            )
            finished.add(ad_set.id)
        return finished

    async def _maybe_promote(
        self,
        ledger: RunLedger,
        executor: Executor,
        snapshot: RunSnapshot,
        plan: GoalPlan,
        goal: Goal,
        testing_metrics: list[AdSetMetric],
        now: datetime,
    ) -> Optional[str]:
        """Returns the graduated testing ad-set id when a winner was promoted."""
        verdict = evaluate(testing_metrics, snapshot.thresholds)
        if verdict is None:
            return None

        setting, scaling = plan.setting, plan.scaling
        details = verdict.to_details()
        if not setting.scaling_enabled:
            await _skip(ledger, plan.goal_key, "scaling_disabled", "Winner found but scaling is disabled", **details)
            return None
        if not setting.auto_scale:
            await _skip(ledger, plan.goal_key, "auto_scale_disabled", "Winner found but auto-scale is off", **details)
            return None
        if scaling is not None and scaling.winner_creative_id == verdict.creative_id:
            return None
        if scaling is not None and scaling.last_promoted_at is not None:
            if now - scaling.last_promoted_at < timedelta(hours=snapshot.promotion_cooldown_hours):
                await _skip(
                    ledger, plan.goal_key, "promotion_cooldown", "Winner found but the last promotion is too recent",
                    promotion_cooldown_hours=snapshot.promotion_cooldown_hours, **details,
                )
                return None

        creative = next((c for c in plan.creatives if c.id == verdict.creative_id), None)
        testing_ad_set = next((a for a in plan.testing.active_ad_sets if a.id == verdict.ad_set_id), None)
        if creative is None or testing_ad_set is None:
            await _skip(ledger, plan.goal_key, "creative_not_ready", "Winning creative is no longer ready", **details)
            return None

        _, _, max_budget = budget_scaler.scale_limits(snapshot.mode)
        start_budget = min(snapshot.mode.scaling_start_budget, max_budget)
        outcome = await executor.promote_winner(goal, verdict, creative, testing_ad_set, scaling, start_budget)
        await ledger.record(
            ActionType.PROMOTE_WINNER, plan.goal_key, ActionStatus.SUCCESS,
            outcome.message, outcome.details,
        )
        return verdict.ad_set_id

    async def _maybe_scale(
        self,
        ledger: RunLedger,
        executor: Executor,
        snapshot: RunSnapshot,
        plan: GoalPlan,
        testing_metrics: list[AdSetMetric],
        scaling_metrics: list[AdSetMetric],
        now: datetime,
    ) -> None:
        scaling = plan.scaling
        if not scaling.is_active:
            await _skip(ledger, plan.goal_key, "scaling_paused", "Scaling campaign is paused")
            return
        if not plan.setting.auto_scale:
            await _skip(ledger, plan.goal_key, "auto_scale_disabled", "Auto-scale is off for this goal")
            return

        verdict = budget_scaler.decide(
            budget_scaler.ScalingCampaignState(scaling.daily_budget, scaling.last_scaled_at),
            current_rate=aggregate_rate(scaling_metrics, snapshot.thresholds),
            baseline_rate=median_rate(testing_metrics, snapshot.thresholds),
            thresholds=snapshot.thresholds,
            mode=snapshot.mode,
            now=now,
        )
        if verdict.kind != budget_scaler.SCALE:
            await _skip(
                ledger, plan.goal_key, verdict.reason, f"Budget not scaled ({verdict.reason})",
                verdict=verdict.kind, **verdict.details,
            )
            return

        outcome = await executor.scale_budget(scaling, verdict.new_budget, verdict.details)
        await ledger.record(
            ActionType.SCALE_BUDGET, plan.goal_key, ActionStatus.SUCCESS,
            outcome.message, outcome.details,
        )

    async def _pause_losers(
        self,
        ledger: RunLedger,
        executor: Executor,
        snapshot: RunSnapshot,
        plan: GoalPlan,
        testing_metrics: list[AdSetMetric],
        promoted_ad_set: Optional[str],
    ) -> None:
        views = {a.id: a for a in plan.testing.active_ad_sets} if plan.testing else {}
        for loser in find_losers(testing_metrics, snapshot.thresholds.min_spend):
            if loser.ad_set_id == promoted_ad_set or loser.ad_set_id not in views:
                continue
            outcome = await executor.pause_ad_set(views[loser.ad_set_id], loser)
            await ledger.record(
                ActionType.PAUSE_ADSET, plan.goal_key, ActionStatus.SUCCESS,
                outcome.message, outcome.details,
            )


def aggregate_rate(metrics: list[AdSetMetric], thresholds: WinnerThresholds) -> Optional[float]:
    """Combined core-signal rate of a campaign's ad-sets, or None below the spend/impression floor."""
    spend = sum(m.spend for m in metrics)
    impressions = sum(m.impressions for m in metrics)
    if not metrics or spend < thresholds.min_spend or impressions < thresholds.min_impressions:
        return None
    return compute_rate(sum(m.core_signal_count for m in metrics), spend)


async def eligible_user_ids(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(User.id)
        .join(UserAdsSettings, UserAdsSettings.user_id == User.id)
        .where(
            User.is_active == True,  # noqa: E712
            UserAdsSettings.ads_enabled == True,  # noqa: E712
            User.id.in_(
                select(GoalSetting.user_id).where(GoalSetting.is_active == True)  # noqa: E712
            ),
        )
        .order_by(User.created_at.asc())
    )
    return list(result.scalars().all())


async def _skip(ledger: RunLedger, goal_key: Optional[str], reason: str, message: str, note: Optional[str] = None, **details) -> None:
    payload = {"reason": reason, **details}
    if note:
        payload["note"] = note
    await ledger.record(ActionType.SKIP, goal_key, ActionStatus.SKIPPED, message, payload)
