"""
Tests for the orchestration run: campaign creation, promotion, scaling,
loser pausing, dry-run simulation, locking and error isolation.
"""

import uuid
from datetime import timedelta

import pytest
from unittest.mock import patch
from sqlalchemy import func, select

from adsengine.config import Settings
from adsengine.errors import AlreadyRunning, UserNotFound
from adsengine.models import (
    AdCampaign, AdSet, Creative, OrchestratorAction, OrchestratorRun, RunStatus,
)
from adsengine.platform_client import RawMetric
from adsengine.services.orchestrator import AdsOrchestrator
from adsengine.services.run_ledger import RunLedger


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://", cron_max_concurrency=1)


@pytest.fixture
def orchestrator(session_factory, settings, client_factory, now):
    return AdsOrchestrator(session_factory, settings=settings, client_factory=client_factory, clock=lambda: now)


async def _campaigns(session_factory, user_id, role=None):
    async with session_factory() as db:
        query = select(AdCampaign).where(AdCampaign.user_id == user_id)
        if role:
            query = query.where(AdCampaign.role == role)
        return list((await db.execute(query)).scalars().all())


async def _ad_sets(session_factory, campaign_id):
    async with session_factory() as db:
        result = await db.execute(select(AdSet).where(AdSet.campaign_id == campaign_id).order_by(AdSet.created_at))
        return list(result.scalars().all())


async def _run_row(session_factory, run_id):
    async with session_factory() as db:
        return await db.get(OrchestratorRun, run_id)


async def _seed_testing(seed, user_id, spends, signals, impressions=2000, goal_key="streams", **fields):
    creative_ids = await seed.creatives(user_id, goal_key, count=len(spends))
    ad_sets = [
        (cid, f"as_{goal_key}_{i}", {"spend": s, "impressions": impressions, "core_signal_count": n})
        for i, (cid, s, n) in enumerate(zip(creative_ids, spends, signals))
    ]
    campaign_id = await seed.campaign(user_id, goal_key, "testing", 20.0, ad_sets=ad_sets, **fields)
    metrics = {
        platform_id: RawMetric(spend=m["spend"], impressions=m["impressions"], core_signal_count=m["core_signal_count"])
        for _, platform_id, m in ad_sets
    }
    return campaign_id, creative_ids, metrics


# ══════════════════════════════════════════════════════════════════════
#  Testing campaign creation
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.anyio
async def test_creates_one_testing_campaign_with_an_ad_set_per_creative(orchestrator, seed, session_factory, fake_client):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")
    await seed.creatives(user_id, "streams", count=3)

    result = await orchestrator.run(user_id)

    assert result.status == RunStatus.COMPLETED.value
    assert result.summary["campaignsCreated"] == 1
    assert [(a.action_type, a.status) for a in result.actions] == [("create_testing_campaign", "success")]
    assert result.actions[0].details["ad_sets"] == 3
    assert result.actions[0].details["adset_budget"] == pytest.approx(6.67)

    # ABO: no campaign budget, one budget per ad-set
    assert fake_client.calls_named("create_campaign") == [("create_campaign", "[Auto] Streams & Smart Link Clicks - Testing", None)]
    assert len(fake_client.calls_named("create_ad_set")) == 3

    campaigns = await _campaigns(session_factory, user_id)
    assert len(campaigns) == 1
    assert campaigns[0].role == "testing"
    assert campaigns[0].daily_budget == 20.0
    assert len(await _ad_sets(session_factory, campaigns[0].id)) == 3

    run = await _run_row(session_factory, result.run_id)
    assert run.status == "completed"
    assert run.campaigns_created == 1
    assert run.ads_mode == "pulse"
    assert run.completed_at is not None


@pytest.mark.anyio
async def test_budget_hint_overrides_mode_default(orchestrator, seed, session_factory):
    user_id = await seed.user(ads_mode="momentum")
    await seed.goal(user_id, "presave", budget_hint=40.0)
    await seed.creatives(user_id, "presave", count=2)

    result = await orchestrator.run(user_id)

    assert result.actions[0].details["daily_budget"] == 40.0
    assert result.actions[0].details["adset_budget"] == 20.0


@pytest.mark.anyio
async def test_goal_without_creatives_is_skipped(orchestrator, seed, session_factory, fake_client):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")

    result = await orchestrator.run(user_id)

    assert len(result.actions) == 1
    action = result.actions[0]
    assert (action.action_type, action.status) == ("skip", "skipped")
    assert action.details["reason"] == "missing_creatives"
    assert fake_client.mutations == []
    assert await _campaigns(session_factory, user_id) == []


@pytest.mark.anyio
async def test_goals_processed_in_priority_order(orchestrator, seed):
    user_id = await seed.user()
    await seed.goal(user_id, "virality", priority=2)
    await seed.goal(user_id, "followers", priority=5)
    await seed.goal(user_id, "build_audience", priority=5)

    result = await orchestrator.run(user_id)

    assert [a.goal_key for a in result.actions] == ["build_audience", "followers", "virality"]


@pytest.mark.anyio
async def test_testing_disabled_without_scaling_is_skipped(orchestrator, seed, fake_client):
    user_id = await seed.user()
    await seed.goal(user_id, "streams", testing_enabled=False)
    await seed.creatives(user_id, "streams", count=2)

    result = await orchestrator.run(user_id)

    assert result.actions[0].details["reason"] == "testing_disabled"
    assert fake_client.mutations == []


@pytest.mark.anyio
async def test_goal_without_destination_link_is_skipped(orchestrator, seed, session_factory, fake_client):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")
    await seed.creatives(user_id, "streams", count=2, destination_url=None)

    result = await orchestrator.run(user_id)

    assert [(a.action_type, a.status) for a in result.actions] == [("skip", "skipped")]
    details = result.actions[0].details
    assert details["reason"] == "missing_destination"
    assert details["destination_kind"] == "smart_link"
    assert details["creatives"] == 2
    assert fake_client.mutations == []
    assert await _campaigns(session_factory, user_id) == []


@pytest.mark.anyio
async def test_creatives_without_a_link_use_the_goal_destination(orchestrator, seed, fake_client):
    user_id = await seed.user(links={
        "presave_link_url": "https://presave.example.com/single",
        "smart_link_url": "https://smart.example.com/artist",
    })
    await seed.goal(user_id, "presave", priority=5)
    await seed.goal(user_id, "followers", priority=1)
    await seed.creatives(user_id, "presave", count=2, destination_url=None)
    await seed.creatives(user_id, "followers", count=1, destination_url=None)

    result = await orchestrator.run(user_id)

    assert [a.action_type for a in result.actions] == ["create_testing_campaign", "create_testing_campaign"]
    destinations = [call[3] for call in fake_client.calls_named("create_ad_set")]
    # followers has no profile link stored and falls back to the smart link
    assert destinations == [
        "https://presave.example.com/single",
        "https://presave.example.com/single",
        "https://smart.example.com/artist",
    ]


# ══════════════════════════════════════════════════════════════════════
#  Winner promotion, scaling and loser pausing
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.anyio
async def test_winner_is_promoted_to_new_scaling_campaign(orchestrator, seed, session_factory, fake_client, now):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")
    testing_id, creative_ids, metrics = await _seed_testing(seed, user_id, [12, 15, 11], [1, 9, 2])
    fake_client.metrics.update(metrics)

    result = await orchestrator.run(user_id)

    assert result.status == "completed"
    assert [a.action_type for a in result.actions] == ["promote_winner"]
    details = result.actions[0].details
    assert details["creative_id"] == str(creative_ids[1])
    assert details["rate"] == pytest.approx(0.6)
    assert details["scaling_campaign"] == "created"
    assert result.summary["winnersPromoted"] == 1

    # CBO scaling budget: Pulse daily budget minus the 30% test lane
    assert fake_client.calls_named("create_campaign")[0][2] == 14.0
    assert ("pause_ad_set", "as_streams_1") in fake_client.calls

    scaling = await _campaigns(session_factory, user_id, role="scaling")
    assert len(scaling) == 1
    assert scaling[0].winner_creative_id == creative_ids[1]
    assert scaling[0].last_promoted_at == now
    scaling_sets = await _ad_sets(session_factory, scaling[0].id)
    assert [s.creative_id for s in scaling_sets] == [creative_ids[1]]

    testing_sets = await _ad_sets(session_factory, testing_id)
    assert [s.status for s in testing_sets] == ["active", "paused", "active"]
    # Live runs cache what they fetched
    assert testing_sets[0].last_metrics == {"spend": 12, "impressions": 2000, "core_signal_count": 1}
    assert testing_sets[0].metrics_synced_at == now


@pytest.mark.anyio
async def test_winner_not_promoted_when_scaling_disabled(orchestrator, seed, fake_client):
    user_id = await seed.user()
    await seed.goal(user_id, "streams", scaling_enabled=False)
    _, _, metrics = await _seed_testing(seed, user_id, [12, 15, 11], [1, 9, 2])
    fake_client.metrics.update(metrics)

    result = await orchestrator.run(user_id)

    assert [(a.action_type, a.details["reason"]) for a in result.actions] == [("skip", "scaling_disabled")]
    assert fake_client.mutations == []


@pytest.mark.anyio
async def test_scaling_budget_capped_then_blocked(seed, session_factory, settings, client_factory, fake_client, now):
    user_id = await seed.user(ads_mode="momentum")
    await seed.goal(user_id, "streams")
    # Flat testing field: no winner, baseline rate 0.1
    _, creative_ids, metrics = await _seed_testing(seed, user_id, [20, 20, 20], [2, 2, 2])
    fake_client.metrics.update(metrics)
    scaling_creative = (await seed.creatives(user_id, "streams", count=1))[0]
    scaling_id = await seed.campaign(
        user_id, "streams", "scaling", 480.0,
        ad_sets=[(scaling_creative, "as_scaling_0", None)],
        winner_creative_id=scaling_creative,
    )
    fake_client.metrics["as_scaling_0"] = RawMetric(spend=100, impressions=5000, core_signal_count=50)

    orchestrator = AdsOrchestrator(session_factory, settings=settings, client_factory=client_factory, clock=lambda: now)
    first = await orchestrator.run(user_id)

    scale_actions = [a for a in first.actions if a.action_type == "scale_budget"]
    assert len(scale_actions) == 1
    assert scale_actions[0].details["new_budget"] == 500
    assert first.summary["budgetsScaled"] == 1
    assert ("update_campaign_budget", f"cmp_scaling_{scaling_id.hex[:6]}", 500) in fake_client.calls

    second = await orchestrator.run(user_id)
    skips = [a for a in second.actions if a.action_type == "skip"]
    assert [a.details["reason"] for a in skips] == ["at_cap"]
    assert second.summary["budgetsScaled"] == 0

    scaling = (await _campaigns(session_factory, user_id, role="scaling"))[0]
    assert scaling.daily_budget == 500
    assert scaling.last_scaled_at == now


@pytest.mark.anyio
async def test_scaling_respects_cooldown(orchestrator, seed, fake_client, now):
    user_id = await seed.user(ads_mode="momentum")
    await seed.goal(user_id, "streams")
    _, _, metrics = await _seed_testing(seed, user_id, [20, 20, 20], [2, 2, 2])
    fake_client.metrics.update(metrics)
    creative = (await seed.creatives(user_id, "streams", count=1))[0]
    await seed.campaign(
        user_id, "streams", "scaling", 100.0,
        ad_sets=[(creative, "as_scaling_0", None)],
        winner_creative_id=creative,
        last_scaled_at=now - timedelta(hours=3),
    )
    fake_client.metrics["as_scaling_0"] = RawMetric(spend=100, impressions=5000, core_signal_count=50)

    result = await orchestrator.run(user_id)

    assert [a.details.get("reason") for a in result.actions] == ["cooldown"]
    assert fake_client.calls_named("update_campaign_budget") == []


@pytest.mark.anyio
async def test_losers_are_paused(orchestrator, seed, session_factory, fake_client):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")
    testing_id, _, metrics = await _seed_testing(seed, user_id, [25, 20, 30], [0, 3, 4])
    fake_client.metrics.update(metrics)

    result = await orchestrator.run(user_id)

    assert [a.action_type for a in result.actions] == ["pause_adset"]
    assert result.summary["adsetsPaused"] == 1
    assert fake_client.calls_named("pause_ad_set") == [("pause_ad_set", "as_streams_0")]
    statuses = [s.status for s in await _ad_sets(session_factory, testing_id)]
    assert statuses == ["paused", "active", "active"]


@pytest.mark.anyio
async def test_losers_kept_when_auto_pause_is_off(orchestrator, seed, fake_client):
    user_id = await seed.user(auto_pause_losers=False)
    await seed.goal(user_id, "streams")
    _, _, metrics = await _seed_testing(seed, user_id, [25, 20, 30], [0, 3, 4])
    fake_client.metrics.update(metrics)

    result = await orchestrator.run(user_id)

    assert result.actions == []
    assert fake_client.calls_named("pause_ad_set") == []


@pytest.mark.anyio
async def test_pulse_rotation_adds_fresh_creatives(orchestrator, seed, session_factory, fake_client, now):
    user_id = await seed.user(ads_mode="pulse")
    await seed.goal(user_id, "streams")
    testing_id, _, metrics = await _seed_testing(
        seed, user_id, [5, 5], [0, 0], last_rotated_at=now - timedelta(days=8),
    )
    fake_client.metrics.update(metrics)
    fresh = await seed.creatives(user_id, "streams", count=1)

    result = await orchestrator.run(user_id)

    assert [a.action_type for a in result.actions] == ["rotate_creatives"]
    assert result.actions[0].details["creative_ids"] == [str(fresh[0])]
    ad_sets = await _ad_sets(session_factory, testing_id)
    assert len(ad_sets) == 3
    testing = (await _campaigns(session_factory, user_id, role="testing"))[0]
    assert testing.last_rotated_at == now


@pytest.mark.anyio
async def test_partially_created_testing_campaign_is_filled_on_next_run(orchestrator, seed, session_factory, fake_client):
    user_id = await seed.user(ads_mode="momentum")
    await seed.goal(user_id, "streams")
    creative_ids = await seed.creatives(user_id, "streams", count=3)
    fake_client.fail_ad_set_attempts = {2}

    first = await orchestrator.run(user_id)

    assert [(a.action_type, a.status) for a in first.actions] == [("error", "failed")]
    testing = await _campaigns(session_factory, user_id, role="testing")
    assert len(testing) == 1
    assert [s.creative_id for s in await _ad_sets(session_factory, testing[0].id)] == [creative_ids[0]]

    second = await orchestrator.run(user_id)

    assert [(a.action_type, a.status) for a in second.actions] == [("rotate_creatives", "success")]
    assert second.actions[0].details["creative_ids"] == [str(creative_ids[1]), str(creative_ids[2])]
    assert len(await _campaigns(session_factory, user_id, role="testing")) == 1
    ad_sets = await _ad_sets(session_factory, testing[0].id)
    assert sorted(str(s.creative_id) for s in ad_sets) == sorted(str(c) for c in creative_ids)


@pytest.mark.anyio
async def test_momentum_keeps_new_uploads_out_of_a_running_test(orchestrator, seed, session_factory, fake_client, now):
    user_id = await seed.user(ads_mode="momentum")
    await seed.goal(user_id, "streams")
    testing_id, _, metrics = await _seed_testing(
        seed, user_id, [5, 5], [0, 0], last_rotated_at=now - timedelta(days=30),
    )
    fake_client.metrics.update(metrics)
    async with session_factory() as db:
        db.add(Creative(
            user_id=user_id, goal_key="streams", creative_type="image",
            url="https://cdn.example.com/streams/new.jpg",
            destination_url="https://link.example.com/release",
            created_at=now - timedelta(days=1),
        ))
        await db.commit()

    result = await orchestrator.run(user_id)

    assert result.actions == []
    assert fake_client.calls_named("create_ad_set") == []
    assert len(await _ad_sets(session_factory, testing_id)) == 2


@pytest.mark.anyio
async def test_interrupted_promotion_is_completed_not_repeated(orchestrator, seed, session_factory, fake_client):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")
    testing_id, creative_ids, metrics = await _seed_testing(seed, user_id, [12, 15, 11], [1, 9, 2])
    fake_client.metrics.update(metrics)
    fake_client.fail_pause_ids = {"as_streams_1"}

    first = await orchestrator.run(user_id)

    assert [(a.action_type, a.status) for a in first.actions] == [("error", "failed")]
    scaling = await _campaigns(session_factory, user_id, role="scaling")
    assert len(scaling) == 1
    assert scaling[0].winner_creative_id == creative_ids[1]
    assert [s.status for s in await _ad_sets(session_factory, testing_id)] == ["active", "active", "active"]

    fake_client.fail_pause_ids.clear()
    second = await orchestrator.run(user_id)

    assert second.actions[0].action_type == "promote_winner"
    assert second.actions[0].details["resumed"] is True
    assert second.actions[0].details["creative_id"] == str(creative_ids[1])
    assert [a.action_type for a in second.actions].count("promote_winner") == 1
    assert ("pause_ad_set", "as_streams_1") in fake_client.calls

    # Still one scaling campaign holding one ad-set for the winner
    assert len(fake_client.calls_named("create_campaign")) == 1
    assert len(fake_client.calls_named("create_ad_set")) == 1
    scaling = await _campaigns(session_factory, user_id, role="scaling")
    assert len(scaling) == 1
    scaling_sets = await _ad_sets(session_factory, scaling[0].id)
    assert [s.creative_id for s in scaling_sets] == [creative_ids[1]]
    assert [s.status for s in await _ad_sets(session_factory, testing_id)] == ["active", "paused", "active"]


# ══════════════════════════════════════════════════════════════════════
#  Errors and preconditions
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.anyio
async def test_failing_goal_does_not_stop_the_run(orchestrator, seed, session_factory, fake_client):
    fake_client.fail_campaign_names = ("Pre-Save",)
    user_id = await seed.user()
    await seed.goal(user_id, "presave", priority=5)
    await seed.goal(user_id, "streams", priority=1)
    await seed.creatives(user_id, "presave", count=2)
    await seed.creatives(user_id, "streams", count=2)

    result = await orchestrator.run(user_id)

    assert result.status == "completed_with_errors"
    assert [(a.action_type, a.goal_key, a.status) for a in result.actions] == [
        ("error", "presave", "failed"),
        ("create_testing_campaign", "streams", "success"),
    ]
    assert result.actions[0].details["code"] == 100
    failed = sum(1 for a in result.actions if a.status == "failed")
    assert result.summary["errorsCount"] == failed == 1
    assert result.summary["campaignsCreated"] == 1

    run = await _run_row(session_factory, result.run_id)
    assert run.errors_count == 1
    assert run.status == "completed_with_errors"


@pytest.mark.anyio
async def test_live_run_without_credential_fails(orchestrator, seed, session_factory):
    user_id = await seed.user(credential=False)
    await seed.goal(user_id, "streams")
    await seed.creatives(user_id, "streams", count=2)

    result = await orchestrator.run(user_id)

    assert result.status == "failed"
    assert result.to_response()["success"] is False
    assert [(a.action_type, a.status) for a in result.actions] == [("error", "failed")]
    assert result.actions[0].details["reason"] == "MissingCredential"
    assert result.summary["errorsCount"] == 1
    assert await _campaigns(session_factory, user_id) == []


@pytest.mark.anyio
async def test_unknown_user_raises_without_writing_a_run(orchestrator, seed, session_factory):
    with pytest.raises(UserNotFound):
        await orchestrator.run(uuid.uuid4())

    inactive = await seed.user(is_active=False)
    with pytest.raises(UserNotFound):
        await orchestrator.run(inactive)

    async with session_factory() as db:
        assert (await db.execute(select(func.count()).select_from(OrchestratorRun))).scalar() == 0


# ══════════════════════════════════════════════════════════════════════
#  Run lock
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.anyio
async def test_second_run_rejected_while_first_is_running(orchestrator, seed, session_factory):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")

    async with session_factory() as db:
        held = await RunLedger.open(db, user_id, "manual", stale_after=timedelta(minutes=30))

        with pytest.raises(AlreadyRunning) as exc_info:
            await orchestrator.run(user_id)
        assert exc_info.value.run_id == held.run_id

        await held.finalize()

    result = await orchestrator.run(user_id)
    assert result.status == "completed"

    async with session_factory() as db:
        running = await db.execute(
            select(func.count()).select_from(OrchestratorRun).where(
                OrchestratorRun.user_id == user_id, OrchestratorRun.status == "running",
            )
        )
        assert running.scalar() == 0


@pytest.mark.anyio
async def test_stale_lock_is_expired(orchestrator, seed, session_factory):
    from adsengine.utils import utcnow

    user_id = await seed.user()
    await seed.goal(user_id, "streams")
    stale_id = uuid.uuid4()
    async with session_factory() as db:
        db.add(OrchestratorRun(
            id=stale_id, user_id=user_id, run_type="scheduled", status="running",
            started_at=utcnow() - timedelta(hours=2),
        ))
        await db.commit()

    result = await orchestrator.run(user_id)

    assert result.status == "completed"
    stale = await _run_row(session_factory, stale_id)
    assert stale.status == "failed"
    assert "expired" in stale.error_message


@pytest.mark.anyio
async def test_lock_released_when_finalize_fails(orchestrator, seed, session_factory):
    user_id = await seed.user()
    await seed.goal(user_id, "streams")
    await seed.creatives(user_id, "streams", count=2)

    with patch.object(RunLedger, "finalize", side_effect=RuntimeError("connection reset")):
        with pytest.raises(RuntimeError):
            await orchestrator.run(user_id)

    async with session_factory() as db:
        runs = (await db.execute(
            select(OrchestratorRun).where(OrchestratorRun.user_id == user_id)
        )).scalars().all()
    assert [(r.status, r.error_message) for r in runs] == [("failed", "Run aborted: RuntimeError")]
    assert runs[0].completed_at is not None

    result = await orchestrator.run(user_id)
    assert result.status == "completed"


# ══════════════════════════════════════════════════════════════════════
#  Dry-run
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.anyio
async def test_dry_run_is_repeatable_and_writes_no_campaigns(orchestrator, seed, session_factory):
    user_id = await seed.user(credential=False)
    await seed.goal(user_id, "streams", priority=5)
    await seed.goal(user_id, "presave", priority=1)
    await seed.creatives(user_id, "presave", count=2)
    testing_id, _, _ = await _seed_testing(seed, user_id, [12, 15, 11, 30], [1, 9, 2, 0])

    first = await orchestrator.run(user_id, dry_run=True)
    second = await orchestrator.run(user_id, dry_run=True)

    assert first.run_id != second.run_id
    assert [a.to_dict() for a in first.actions] == [a.to_dict() for a in second.actions]
    assert [a.action_type for a in first.actions] == ["promote_winner", "pause_adset", "create_testing_campaign"]
    assert all(a.details["dry_run"] is True for a in first.actions)
    assert all(a.message.startswith("Would ") for a in first.actions)

    response = first.to_response()
    assert response["dry_run"] is True
    assert response["run_type"] == "dry_run"
    assert response["summary"]["campaignsCreated"] == 1

    # Only the seeded testing campaign exists and nothing on it changed
    campaigns = await _campaigns(session_factory, user_id)
    assert [c.id for c in campaigns] == [testing_id]
    assert all(s.status == "active" for s in await _ad_sets(session_factory, testing_id))

    async with session_factory() as db:
        runs = (await db.execute(
            select(OrchestratorRun).where(OrchestratorRun.user_id == user_id)
        )).scalars().all()
        assert {r.run_type for r in runs} == {"dry_run"}
        assert {r.status for r in runs} == {"completed"}


@pytest.mark.anyio
async def test_dry_run_never_touches_the_platform(orchestrator, seed, fake_client):
    user_id = await seed.user(credential=True)
    await seed.goal(user_id, "streams")
    _, _, metrics = await _seed_testing(seed, user_id, [12, 15, 11], [1, 9, 2])
    fake_client.metrics.update(metrics)

    result = await orchestrator.run(user_id, dry_run=True)

    assert [a.action_type for a in result.actions] == ["promote_winner"]
    assert fake_client.mutations == []
    assert len(fake_client.calls_named("fetch_metrics")) == 1


@pytest.mark.anyio
async def test_dry_run_without_metrics_notes_the_skip(orchestrator, seed):
    user_id = await seed.user(credential=False)
    await seed.goal(user_id, "streams")
    creative_ids = await seed.creatives(user_id, "streams", count=2)
    await seed.campaign(
        user_id, "streams", "testing", 20.0,
        ad_sets=[(cid, f"as_{i}", None) for i, cid in enumerate(creative_ids)],
    )

    result = await orchestrator.run(user_id, dry_run=True)

    assert len(result.actions) == 1
    skip = result.actions[0]
    assert skip.details["reason"] == "missing_metrics"
    assert skip.details["note"]
    assert result.status == "completed"


# ══════════════════════════════════════════════════════════════════════
#  Scheduled batch
# ══════════════════════════════════════════════════════════════════════

@pytest.mark.anyio
async def test_scheduled_batch_runs_only_eligible_users(orchestrator, seed, session_factory):
    eligible = await seed.user()
    await seed.goal(eligible, "streams")
    await seed.creatives(eligible, "streams", count=1)

    disabled = await seed.user(ads_enabled=False)
    await seed.goal(disabled, "streams")

    no_goals = await seed.user()
    await seed.goal(no_goals, "streams", is_active=False)

    batch = await orchestrator.run_scheduled_batch()

    assert batch["users"] == 1
    assert batch["results"][0]["user_id"] == str(eligible)
    assert batch["results"][0]["status"] == "completed"

    async with session_factory() as db:
        actions = (await db.execute(select(func.count()).select_from(OrchestratorAction))).scalar()
        run = (await db.execute(select(OrchestratorRun))).scalar_one()
    assert run.run_type == "scheduled"
    assert actions == 1
