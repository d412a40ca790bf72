"""
Durable resume state for pipeline phases, and the run audit log.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy import select, delete

from .db import Database
from .models import PipelineCheckpoint, PipelineRun, RunStatus, utcnow


@dataclass
class TradesCheckpoint:
    """Progress marker for the trades phase"""
    last_market_index: int = 0
    trades_stored: int = 0
    trades_fetched: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TradesCheckpoint":
        return cls(
            last_market_index=int(data.get("last_market_index", 0) or 0),
            trades_stored=int(data.get("trades_stored", 0) or 0),
            trades_fetched=int(data.get("trades_fetched", 0) or 0),
        )


class CheckpointStore:
    """
    Phase-scoped checkpoints keyed by (protocol, phase).

    Every save appends a row; load returns the newest one.
    """

    def __init__(self, db: Database):
        self.db = db

    async def save(self, run_id: str, protocol: str, phase: str, data: dict):
        async with self.db.session() as session:
            session.add(PipelineCheckpoint(
                run_id=run_id,
                protocol=protocol,
                phase=phase,
                checkpoint_data=data,
                created_at=utcnow(),
            ))
        logger.debug(f"Checkpoint saved for {protocol}/{phase}: {data}")

    async def load(self, protocol: str, phase: str) -> Optional[dict]:
        async with self.db.session() as session:
            result = await session.execute(
                select(PipelineCheckpoint)
                .where(
                    PipelineCheckpoint.protocol == protocol,
                    PipelineCheckpoint.phase == phase,
                )
                .order_by(PipelineCheckpoint.created_at.desc(), PipelineCheckpoint.id.desc())
                .limit(1)
            )
            checkpoint = result.scalar_one_or_none()

        if checkpoint is None:
            return None
        return dict(checkpoint.checkpoint_data)

    async def clear(self, protocol: str, phase: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(PipelineCheckpoint).where(
                    PipelineCheckpoint.protocol == protocol,
                    PipelineCheckpoint.phase == phase,
                )
            )
        logger.debug(f"Cleared {result.rowcount} checkpoints for {protocol}/{phase}")
        return result.rowcount


class RunLog:
    """
    Audit rows for pipeline runs.

    A row is inserted as running and updated exactly once with its
    terminal status; terminal rows are never touched again.
    """

    def __init__(self, db: Database):
        self.db = db

    async def record_start(self, run_id: str, protocol: str, started_at: datetime):
        async with self.db.session() as session:
            session.add(PipelineRun(
                id=run_id,
                protocol=protocol,
                status=RunStatus.RUNNING.value,
                started_at=started_at,
            ))

    async def record_end(
        self,
        run_id: str,
        status: RunStatus,
        counters: dict,
        completed_at: datetime,
        error_message: Optional[str] = None,
        protocol: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        """
        Write the terminal state of a run.

        When the running row is missing (record_start failed) and a protocol
        is given, the terminal row is inserted directly.

        Returns:
            False if the row is already terminal, or missing with no protocol
        """
        async with self.db.session() as session:
            run = await session.get(PipelineRun, run_id)
            if run is None:
                if protocol is None:
                    logger.warning(f"No audit row for run {run_id}")
                    return False
                logger.warning(f"No audit row for run {run_id}, inserting terminal row")
                run = PipelineRun(id=run_id, protocol=protocol, started_at=started_at or completed_at)
                session.add(run)
            elif run.is_terminal:
                logger.warning(f"Run {run_id} already recorded as {run.status}")
                return False

            run.status = status.value
            run.completed_at = completed_at
            run.error_message = error_message
            for field in (
                "events_fetched", "markets_fetched", "trades_fetched",
                "traders_fetched", "positions_fetched",
            ):
                setattr(run, field, int(counters.get(field, 0)))

        return True

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        async with self.db.session() as session:
            return await session.get(PipelineRun, run_id)
