"""
Ads Orchestration Engine — Database Models
Goal settings, creatives, engine-owned campaigns and the run ledger.
All data persisted to PostgreSQL.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from adsengine.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class AdsMode(str, enum.Enum):
    PULSE = "pulse"
    MOMENTUM = "momentum"


class CreativeType(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"


class CreativeStatus(str, enum.Enum):
    READY = "ready"
    ARCHIVED = "archived"


class CampaignRole(str, enum.Enum):
    TESTING = "testing"
    SCALING = "scaling"


class DeliveryStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class RunType(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    DRY_RUN = "dry_run"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class ActionType(str, enum.Enum):
    CREATE_TESTING_CAMPAIGN = "create_testing_campaign"
    PROMOTE_WINNER = "promote_winner"
    SCALE_BUDGET = "scale_budget"
    PAUSE_ADSET = "pause_adset"
    ROTATE_CREATIVES = "rotate_creatives"
    SKIP = "skip"
    ERROR = "error"


class ActionStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ══════════════════════════════════════════════════════════════════════
#  USERS & CREDENTIALS
# ══════════════════════════════════════════════════════════════════════

class User(Base):
    """Account the engine runs campaigns for."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    credential: Mapped["AdPlatformCredential"] = relationship("AdPlatformCredential", back_populates="user", uselist=False, cascade="all, delete-orphan")
    ads_settings: Mapped["UserAdsSettings"] = relationship("UserAdsSettings", back_populates="user", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_users_email", "email"),
    )


class AdPlatformCredential(Base):
    """Meta ad account access for one user. Token stored encrypted."""
    __tablename__ = "ad_platform_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ad_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    page_id: Mapped[str] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=CredentialStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    user: Mapped["User"] = relationship("User", back_populates="credential")

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_credential_per_user"),
        Index("ix_ad_platform_credentials_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SETTINGS — Operating mode and per-goal toggles (written by the UI)
# ══════════════════════════════════════════════════════════════════════

class UserAdsSettings(Base):
    """Operating mode (Pulse / Momentum) and account-wide automation toggles."""
    __tablename__ = "user_ads_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ads_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    ads_mode: Mapped[str] = mapped_column(String(20), default=AdsMode.PULSE.value)
    # Partial overrides of the configured mode defaults, e.g. {"rotation_days": 5}
    pulse_settings: Mapped[dict] = mapped_column(JSON, nullable=True)
    momentum_settings: Mapped[dict] = mapped_column(JSON, nullable=True)
    auto_pause_losers: Mapped[bool] = mapped_column(Boolean, default=True)
    # Ad destinations, resolved per goal through goals.DESTINATION_SOURCES
    smart_link_url: Mapped[str] = mapped_column(Text, nullable=True)
    presave_link_url: Mapped[str] = mapped_column(Text, nullable=True)
    one_click_link_url: Mapped[str] = mapped_column(Text, nullable=True)
    instagram_profile_url: Mapped[str] = mapped_column(Text, nullable=True)
    facebook_page_url: Mapped[str] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    user: Mapped["User"] = relationship("User", back_populates="ads_settings")

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_ads_settings_per_user"),
        Index("ix_user_ads_settings_enabled", "ads_enabled"),
    )


class GoalSetting(Base):
    """Per-user, per-goal toggles. Read-only to the engine."""
    __tablename__ = "goal_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    goal_key: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[int] = mapped_column(Integer, default=3)  # 1..5
    budget_hint: Mapped[float] = mapped_column(Float, nullable=True)
    auto_scale: Mapped[bool] = mapped_column(Boolean, default=True)
    testing_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    scaling_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "goal_key", name="uq_goal_setting_per_user"),
        Index("ix_goal_settings_user_active", "user_id", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CREATIVES — Uploaded image/video assets tagged with a goal
# ══════════════════════════════════════════════════════════════════════

class Creative(Base):
    """Uploaded creative asset. The engine only reads status = ready."""
    __tablename__ = "creatives"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    goal_key: Mapped[str] = mapped_column(String(64), nullable=False)
    creative_type: Mapped[str] = mapped_column(String(20), default=CreativeType.IMAGE.value)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    destination_url: Mapped[str] = mapped_column(Text, nullable=True)
    caption: Mapped[str] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=CreativeStatus.READY.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_creatives_user_goal_status", "user_id", "goal_key", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS — Engine-owned testing / scaling campaigns
# ══════════════════════════════════════════════════════════════════════

class AdCampaign(Base):
    """One platform campaign per (user, goal, role)."""
    __tablename__ = "ad_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    goal_key: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # testing / scaling
    platform_campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    daily_budget: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DeliveryStatus.ACTIVE.value)
    winner_creative_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)  # scaling only
    last_scaled_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_promoted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_rotated_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    ad_sets: Mapped[list["AdSet"]] = relationship("AdSet", back_populates="campaign", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "goal_key", "role", name="uq_campaign_per_goal_role"),
        Index("ix_ad_campaigns_user_id", "user_id"),
        Index("ix_ad_campaigns_platform_id", "platform_campaign_id"),
    )


class AdSet(Base):
    """Platform ad-set running exactly one creative."""
    __tablename__ = "ad_sets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("ad_campaigns.id", ondelete="CASCADE"), nullable=False)
    creative_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("creatives.id", ondelete="CASCADE"), nullable=False)
    platform_adset_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform_ad_id: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=DeliveryStatus.ACTIVE.value)
    # Last-known performance: {"spend": .., "impressions": .., "core_signal_count": ..}
    last_metrics: Mapped[dict] = mapped_column(JSON, nullable=True)
    metrics_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    campaign: Mapped["AdCampaign"] = relationship("AdCampaign", back_populates="ad_sets")

    __table_args__ = (
        UniqueConstraint("platform_adset_id", name="uq_ad_sets_platform_id"),
        Index("ix_ad_sets_campaign_id", "campaign_id"),
        Index("ix_ad_sets_creative_id", "creative_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RUN LEDGER — One row per invocation, one row per decision
# ══════════════════════════════════════════════════════════════════════

class OrchestratorRun(Base):
    """One orchestration invocation. Also serves as the per-user run lock."""
    __tablename__ = "orchestrator_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    run_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default=RunStatus.RUNNING.value)
    ads_mode: Mapped[str] = mapped_column(String(20), nullable=True)
    campaigns_created: Mapped[int] = mapped_column(Integer, default=0)
    winners_promoted: Mapped[int] = mapped_column(Integer, default=0)
    budgets_scaled: Mapped[int] = mapped_column(Integer, default=0)
    adsets_paused: Mapped[int] = mapped_column(Integer, default=0)
    errors_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    actions: Mapped[list["OrchestratorAction"]] = relationship(
        "OrchestratorAction", back_populates="run", cascade="all, delete-orphan",
        order_by="OrchestratorAction.seq",
    )

    __table_args__ = (
        # At most one running run per user; this index is the run lock.
        Index(
            "uq_orchestrator_runs_one_running", "user_id", unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("ix_orchestrator_runs_user_started", "user_id", "started_at"),
        Index("ix_orchestrator_runs_status", "status"),
    )


class OrchestratorAction(Base):
    """Append-only record of one decision within a run."""
    __tablename__ = "orchestrator_actions"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("orchestrator_runs.id", ondelete="CASCADE"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(40), nullable=False)
    goal_key: Mapped[str] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    run: Mapped["OrchestratorRun"] = relationship("OrchestratorRun", back_populates="actions")

    __table_args__ = (
        UniqueConstraint("run_id", "seq", name="uq_action_seq_per_run"),
        Index("ix_orchestrator_actions_run_id", "run_id"),
        Index("ix_orchestrator_actions_type", "action_type"),
    )
