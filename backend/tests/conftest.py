"""
Shared fixtures: an in-memory SQLite database, a seeding helper and a fake
ad platform client that records every call.
"""

import itertools
import os
import uuid
from datetime import datetime, timedelta

# Must be set before adsengine.database builds its engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from adsengine.database import Base
from adsengine.errors import AdPlatformError
from adsengine.models import (
    AdCampaign, AdPlatformCredential, AdSet, Creative, GoalSetting, User, UserAdsSettings,
)
from adsengine.platform_client import PlatformAdSet, RawMetric

NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def now():
    return NOW


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class FakePlatformClient:
    """Stands in for MetaAdsClient; metrics are keyed by platform ad-set id."""

    def __init__(
        self,
        metrics: dict | None = None,
        fail_campaign_names: tuple[str, ...] = (),
        fail_pause_ids: tuple[str, ...] = (),
        fail_ad_set_attempts: tuple[int, ...] = (),
    ):
        self.metrics = dict(metrics or {})
        self.fail_campaign_names = fail_campaign_names
        # Platform ad-set ids whose pause is rejected
        self.fail_pause_ids = set(fail_pause_ids)
        # 1-based create_ad_set_with_creative attempts that fail
        self.fail_ad_set_attempts = set(fail_ad_set_attempts)
        self._ad_set_attempts = 0
        self.calls: list[tuple] = []
        self._ids = itertools.count(1)

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] != "fetch_metrics"]

    async def create_campaign(self, name, objective, daily_budget=None):
        if any(fragment in name for fragment in self.fail_campaign_names):
            raise AdPlatformError("Invalid parameter", status_code=400, code=100)
        self.calls.append(("create_campaign", name, daily_budget))
        return f"cmp_{next(self._ids)}"

    async def create_ad_set_with_creative(
        self, campaign_id, name, optimization_goal, creative_type, media_url,
        destination_url=None, message=None, daily_budget=None,
    ):
        self._ad_set_attempts += 1
        if self._ad_set_attempts in self.fail_ad_set_attempts:
            raise AdPlatformError("Ad creative rejected", status_code=400, code=100)
        self.calls.append(("create_ad_set", campaign_id, daily_budget, destination_url))
        n = next(self._ids)
        return PlatformAdSet(adset_id=f"as_{n}", ad_id=f"ad_{n}")

    async def update_campaign_budget(self, campaign_id, daily_budget):
        self.calls.append(("update_campaign_budget", campaign_id, daily_budget))

    async def pause_ad_set(self, adset_id):
        if adset_id in self.fail_pause_ids:
            raise AdPlatformError("Service temporarily unavailable", status_code=500, code=2)
        self.calls.append(("pause_ad_set", adset_id))

    async def fetch_metrics(self, adset_ids, core_signal, lookback_days=7):
        self.calls.append(("fetch_metrics", tuple(adset_ids), core_signal))
        return {i: self.metrics.get(i, RawMetric()) for i in adset_ids}


@pytest.fixture
def fake_client():
    return FakePlatformClient()


@pytest.fixture
def client_factory(fake_client):
    async def _factory(cred, db, dry_run):
        return fake_client
    return _factory


class Seeder:
    """Writes users, goals, creatives and campaigns straight into the test DB."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _add(self, *rows):
        async with self.session_factory() as db:
            db.add_all(rows)
            await db.commit()

    async def user(
        self,
        ads_mode: str = "pulse",
        pulse: dict | None = None,
        momentum: dict | None = None,
        auto_pause_losers: bool = True,
        ads_enabled: bool = True,
        credential: bool = True,
        is_active: bool = True,
        links: dict | None = None,
    ) -> uuid.UUID:
        user_id = uuid.uuid4()
        rows = [
            User(id=user_id, email=f"{user_id.hex[:8]}@example.com", name="Artist", is_active=is_active),
            UserAdsSettings(
                user_id=user_id, ads_enabled=ads_enabled, ads_mode=ads_mode,
                pulse_settings=pulse, momentum_settings=momentum, auto_pause_losers=auto_pause_losers,
                **(links or {}),
            ),
        ]
        if credential:
            rows.append(AdPlatformCredential(
                user_id=user_id, ad_account_id="act_1001", page_id="page_1", access_token="token-abcdef123456",
            ))
        await self._add(*rows)
        return user_id

    async def goal(self, user_id: uuid.UUID, goal_key: str = "streams", **fields) -> None:
        values = {"is_active": True, "priority": 3, **fields}
        await self._add(GoalSetting(user_id=user_id, goal_key=goal_key, **values))

    async def creatives(
        self, user_id: uuid.UUID, goal_key: str = "streams", count: int = 3,
        destination_url: str | None = "https://link.example.com/release",
    ) -> list[uuid.UUID]:
        rows = [
            Creative(
                id=uuid.uuid4(), user_id=user_id, goal_key=goal_key, creative_type="image",
                url=f"https://cdn.example.com/{goal_key}/{i}.jpg",
                destination_url=destination_url,
                created_at=NOW - timedelta(days=30) + timedelta(minutes=i),
            )
            for i in range(count)
        ]
        await self._add(*rows)
        return [r.id for r in rows]

    async def campaign(
        self,
        user_id: uuid.UUID,
        goal_key: str,
        role: str,
        daily_budget: float,
        ad_sets: list[tuple[uuid.UUID, str, dict | None]] = (),
        **fields,
    ) -> uuid.UUID:
        """ad_sets: (creative_id, platform_adset_id, last_metrics) per ad-set."""
        campaign_id = uuid.uuid4()
        values = {"last_rotated_at": NOW - timedelta(days=1), **fields}
        rows = [AdCampaign(
            id=campaign_id, user_id=user_id, goal_key=goal_key, role=role,
            platform_campaign_id=f"cmp_{role}_{campaign_id.hex[:6]}", daily_budget=daily_budget,
            created_at=NOW - timedelta(days=20), **values,
        )]
        for i, (creative_id, platform_adset_id, last_metrics) in enumerate(ad_sets):
            rows.append(AdSet(
                campaign_id=campaign_id, creative_id=creative_id, platform_adset_id=platform_adset_id,
                last_metrics=last_metrics, created_at=NOW - timedelta(days=20) + timedelta(minutes=i),
            ))
        await self._add(*rows)
        return campaign_id


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
