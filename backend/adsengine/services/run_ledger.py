"""
Run Ledger — OrchestratorRun rows, append-only actions and the per-user run lock.

The lock is the `running` run row itself: a partial unique index allows only
one running row per user, so inserting it is an atomic check-and-set.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from adsengine.errors import AlreadyRunning
from adsengine.models import (
    ActionStatus, ActionType, OrchestratorAction, OrchestratorRun, RunStatus,
)
from adsengine.utils import utcnow

logger = logging.getLogger(__name__)

# Run counter column -> action type it counts
COUNTER_ACTIONS = {
    "campaigns_created": ActionType.CREATE_TESTING_CAMPAIGN.value,
    "winners_promoted": ActionType.PROMOTE_WINNER.value,
    "budgets_scaled": ActionType.SCALE_BUDGET.value,
    "adsets_paused": ActionType.PAUSE_ADSET.value,
}


@dataclass(frozen=True)
class ActionRecord:
    seq: int
    action_type: str
    goal_key: Optional[str]
    status: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "type": self.action_type,
            "goal_key": self.goal_key,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


class RunLedger:
    """Owns one OrchestratorRun and the actions recorded against it."""

    def __init__(self, db: AsyncSession, run: OrchestratorRun):
        self.db = db
        self.run = run
        self._run_id = run.id
        self.actions: list[ActionRecord] = []

    @property
    def run_id(self) -> uuid.UUID:
        return self._run_id

    # ── Lock ─────────────────────────────────────────────────────────

    @classmethod
    async def open(
        cls,
        db: AsyncSession,
        user_id: uuid.UUID,
        run_type: str,
        stale_after: timedelta,
        ads_mode: Optional[str] = None,
    ) -> "RunLedger":
        """Insert the running row for this user or raise AlreadyRunning."""
        await cls._expire_stale_runs(db, user_id, stale_after)

        run = OrchestratorRun(
            id=uuid.uuid4(),
            user_id=user_id,
            run_type=run_type,
            status=RunStatus.RUNNING.value,
            ads_mode=ads_mode,
            started_at=utcnow(),
        )
        db.add(run)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = (await db.execute(
                select(OrchestratorRun.id).where(
                    OrchestratorRun.user_id == user_id,
                    OrchestratorRun.status == RunStatus.RUNNING.value,
                )
            )).scalar_one_or_none()
            logger.warning(f"Run lock held for user {user_id} by run {existing}")
            raise AlreadyRunning(user_id, existing)

        logger.info(f"Run {run.id} started for user {user_id} ({run_type})")
        return cls(db, run)

    @staticmethod
    async def _expire_stale_runs(db: AsyncSession, user_id: uuid.UUID, stale_after: timedelta) -> None:
        cutoff = utcnow() - stale_after
        result = await db.execute(
            update(OrchestratorRun)
            .where(
                OrchestratorRun.user_id == user_id,
                OrchestratorRun.status == RunStatus.RUNNING.value,
                OrchestratorRun.started_at < cutoff,
            )
            .values(
                status=RunStatus.FAILED.value,
                completed_at=utcnow(),
                error_message="Run lock expired (run did not finish)",
            )
        )
        if result.rowcount:
            logger.warning(f"Expired {result.rowcount} stale run(s) for user {user_id}")
        await db.commit()

    # ── Actions ──────────────────────────────────────────────────────

    async def record(
        self,
        action_type: ActionType,
        goal_key: Optional[str],
        status: ActionStatus,
        message: str,
        details: Optional[dict] = None,
    ) -> ActionRecord:
        """Append one action and commit it together with any pending writes."""
        record = ActionRecord(
            seq=len(self.actions) + 1,
            action_type=action_type.value,
            goal_key=goal_key,
            status=status.value,
            message=message,
            details=dict(details or {}),
        )
        self.actions.append(record)
        self.db.add(OrchestratorAction(
            run_id=self._run_id,
            seq=record.seq,
            action_type=record.action_type,
            goal_key=goal_key,
            status=record.status,
            message=message,
            details=record.details,
        ))
        await self.db.commit()
        log = logger.warning if status == ActionStatus.FAILED else logger.info
        log(f"[run {self._run_id}] {record.action_type}/{record.status} goal={goal_key}: {message}")
        return record

    def count(self, action_type: str, status: str = ActionStatus.SUCCESS.value) -> int:
        return sum(1 for a in self.actions if a.action_type == action_type and a.status == status)

    @property
    def errors_count(self) -> int:
        return sum(1 for a in self.actions if a.status == ActionStatus.FAILED.value)

    def summary(self) -> dict:
        return {
            "campaignsCreated": self.count(COUNTER_ACTIONS["campaigns_created"]),
            "winnersPromoted": self.count(COUNTER_ACTIONS["winners_promoted"]),
            "budgetsScaled": self.count(COUNTER_ACTIONS["budgets_scaled"]),
            "adsetsPaused": self.count(COUNTER_ACTIONS["adsets_paused"]),
            "errorsCount": self.errors_count,
        }

    # ── Finalize ─────────────────────────────────────────────────────

    async def finalize(self, precondition_error: Optional[str] = None) -> OrchestratorRun:
        """Write counters and the terminal status; the run is never touched again."""
        if precondition_error:
            status = RunStatus.FAILED
        elif self.errors_count > 0:
            status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            status = RunStatus.COMPLETED

        for column, action_type in COUNTER_ACTIONS.items():
            setattr(self.run, column, self.count(action_type))
        self.run.errors_count = self.errors_count
        self.run.status = status.value
        self.run.error_message = precondition_error
        self.run.completed_at = utcnow()
        await self.db.commit()
        logger.info(f"Run {self._run_id} finished: {status.value} {self.summary()}")
        return self.run

    async def release(self, error_message: str) -> None:
        """
        Mark the run failed after its own bookkeeping broke.

        Discards whatever the session had pending and writes the terminal row
        with a plain UPDATE so the per-user lock is freed even when the ORM
        state of the run is unusable.
        """
        await self.db.rollback()
        await self.db.execute(
            update(OrchestratorRun)
            .where(
                OrchestratorRun.id == self._run_id,
                OrchestratorRun.status == RunStatus.RUNNING.value,
            )
            .values(
                status=RunStatus.FAILED.value,
                errors_count=self.errors_count,
                error_message=error_message,
                completed_at=utcnow(),
            )
        )
        await self.db.commit()
        logger.warning(f"Run {self._run_id} released after failure: {error_message}")
