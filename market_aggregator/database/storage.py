"""
Batched, merge-on-key storage writer shared by the batch pipeline
and the real-time ingestion service.
"""

from typing import Dict, List, Type

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StorageWriteFailure
from .db import Database
from .models import Base, Event, Market, Trade, Trader, Position, OrderbookSnapshot

DEFAULT_BATCH_SIZE = 500


class StorageWriter:
    """
    Writes enriched records in fixed-size batches.

    Each record is merged on its primary key, so writing the same record
    twice leaves a single row holding the latest values. A failed batch is
    logged and skipped; the remaining batches are still written.
    """

    def __init__(self, db: Database, batch_size: int = DEFAULT_BATCH_SIZE):
        """
        Args:
            db: Database instance
            batch_size: Records per transaction
        """
        self.db = db
        self.batch_size = max(1, batch_size)

        # Tracking
        self._total_written = 0
        self._failed_batches = 0

    async def store_events(self, records: List[dict]) -> int:
        return await self._store(Event, records)

    async def store_markets(self, records: List[dict]) -> int:
        return await self._store(Market, records)

    async def store_trades(self, records: List[dict]) -> int:
        return await self._store(Trade, records)

    async def store_traders(self, records: List[dict]) -> int:
        return await self._store(Trader, records)

    async def store_positions(self, records: List[dict]) -> int:
        return await self._store(Position, records)

    async def store_orderbooks(self, records: List[dict]) -> int:
        return await self._store(OrderbookSnapshot, records)

    async def _store(self, model: Type[Base], records: List[dict]) -> int:
        """
        Write records in batches.

        Returns:
            Number of records in batches that committed successfully
        """
        if not records:
            return 0

        stored = 0
        for i in range(0, len(records), self.batch_size):
            batch = records[i : i + self.batch_size]
            try:
                await self._write_batch(model, batch)
                stored += len(batch)
            except StorageWriteFailure as e:
                self._failed_batches += 1
                logger.error(
                    f"Failed to store {len(batch)} {e.table} records "
                    f"(batch at offset {i}): {e}"
                )

        self._total_written += stored
        return stored

    async def _write_batch(self, model: Type[Base], batch: List[dict]):
        """Merge one batch inside a single transaction"""
        columns = set(model.__table__.columns.keys())

        try:
            async with self.db.session() as session:
                for record in batch:
                    row = model(**{k: v for k, v in record.items() if k in columns})
                    await session.merge(row)
        except SQLAlchemyError as e:
            raise StorageWriteFailure(
                str(e), table=model.__tablename__, batch_size=len(batch)
            ) from e

    def get_stats(self) -> dict:
        """Get writer statistics"""
        return {
            "batch_size": self.batch_size,
            "total_written": self._total_written,
            "failed_batches": self._failed_batches,
        }


class TradeBuffer:
    """
    Trades waiting for the next flush, indexed by market id.

    drain() hands back everything buffered and empties the buffer in the
    same step, so memory stays bounded by the flush threshold.
    """

    def __init__(self):
        self._by_market: Dict[str, List[dict]] = {}
        self._count = 0

    def add(self, market_id: str, trades: List[dict]):
        if not trades:
            return
        self._by_market.setdefault(market_id, []).extend(trades)
        self._count += len(trades)

    def drain(self) -> List[dict]:
        records = [t for trades in self._by_market.values() for t in trades]
        self.clear()
        return records

    def clear(self):
        self._by_market.clear()
        self._count = 0

    @property
    def market_ids(self) -> List[str]:
        return list(self._by_market.keys())

    def __len__(self) -> int:
        return self._count
