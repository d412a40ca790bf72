"""
Aggregation pipeline for one venue.

A run walks a fixed sequence of phases (events, markets, prices,
orderbooks, trades, traders) and writes each category to storage as soon
as it has been fetched. Trades are flushed incrementally and the trades
phase checkpoints its progress so an interrupted run can resume.
"""

import asyncio
import uuid
from typing import Dict, List, Optional, Union

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from ..database.checkpoints import CheckpointStore, RunLog, TradesCheckpoint
from ..database.db import Database
from ..database.models import RunStatus
from ..database.storage import StorageWriter, TradeBuffer
from ..errors import AlreadyRunningError, PipelineFatalError, UpstreamFetchError
from ..ingestion.trade_fetcher import INTER_MARKET_DELAY, TradeFetcher
from ..platforms.base import BaseVenue
from ..transformers.common import utcnow
from .config import PipelineConfig, resolve_config
from .status import PipelinePhase, PipelineStatus

TRADES_PHASE = "trades"


class AggregationPipeline:
    """
    Single-flight pipeline bound to one venue and one database.

    start() launches a run in the background and returns its id; callers
    follow the run through get_status().
    """

    def __init__(
        self,
        venue: BaseVenue,
        db: Database,
        writer: Optional[StorageWriter] = None,
        checkpoints: Optional[CheckpointStore] = None,
        run_log: Optional[RunLog] = None,
        defaults: Optional[dict] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            venue: Venue data source
            db: Initialized database
            writer: Storage writer (built from db if omitted, then sized
                per run from store_batch_size)
            checkpoints: Checkpoint store (built from db if omitted)
            run_log: Run audit log (built from db if omitted)
            defaults: Config values applied under test-mode presets and overrides
        """
        self.venue = venue
        self.db = db
        self.writer = writer or StorageWriter(db)
        self._owns_writer = writer is None
        self.checkpoints = checkpoints or CheckpointStore(db)
        self.run_log = run_log or RunLog(db)
        self.defaults = dict(defaults or {})
        self.inter_market_delay = INTER_MARKET_DELAY

        self._running = False
        self._status = PipelineStatus(protocol=venue.protocol)
        self._task: Optional[asyncio.Task] = None

        # Working state, reset at the start of each run
        self._trade_buffer = TradeBuffer()
        self._activity: Dict[str, dict] = {}
        self._markets: List[dict] = []
        self._events: List[dict] = []
        self._prices: Dict[str, float] = {}
        self._orderbooks: Dict[str, dict] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, config: Optional[Union[dict, PipelineConfig]] = None) -> str:
        """
        Launch a run in the background.

        Must be called from inside a running event loop.

        Returns:
            Run id

        Raises:
            AlreadyRunningError: a run is already in progress
            ValueError: invalid config
        """
        if self._running:
            raise AlreadyRunningError(
                f"Pipeline for {self.venue.protocol} is already running ({self._status.run_id})"
            )

        resolved = resolve_config(config, self.defaults)
        if self._owns_writer:
            self.writer.batch_size = max(1, resolved.store_batch_size)

        self._running = True
        self._reset_working_state()

        run_id = str(uuid.uuid4())
        self._status = PipelineStatus(
            run_id=run_id,
            protocol=self.venue.protocol,
            is_running=True,
            current_phase=PipelinePhase.IDLE,
            started_at=utcnow(),
        )

        logger.info(f"Starting {self.venue.protocol} pipeline run {run_id} ({resolved.to_dict()})")
        self._task = asyncio.create_task(self._run(run_id, resolved))
        return run_id

    def get_status(self) -> PipelineStatus:
        """Deep copy of the current status"""
        return self._status.snapshot()

    def _reset_working_state(self):
        self._trade_buffer.clear()
        self._activity = {}
        self._markets = []
        self._events = []
        self._prices = {}
        self._orderbooks = {}

    def _set_phase(self, phase: PipelinePhase):
        self._status.current_phase = phase
        logger.info(f"[{self.venue.protocol}] Phase: {phase.value}")

    # ==================== Run ====================

    async def _run(self, run_id: str, config: PipelineConfig):
        status = self._status
        progress = status.progress
        run_status = RunStatus.FAILED

        try:
            await self.run_log.record_start(run_id, self.venue.protocol, status.started_at)

            await self._fetch_events(config)
            await self._fetch_markets(config)

            if config.enable_price_fetch and self.venue.supports_prices:
                await self._fetch_prices()

            if config.enable_orderbook_fetch:
                await self._fetch_orderbooks()

            await self._store_markets_and_events()

            await self._fetch_trades(run_id, config)

            if config.enable_trader_fetch and self.venue.supports_traders:
                await self._fetch_traders(config)

            self._set_phase(PipelinePhase.STORING)
            if self._activity:
                # Markets again, now carrying the 24h activity from the trades phase
                await self._store_markets()

            run_status = RunStatus.COMPLETED
            status.current_phase = PipelinePhase.COMPLETED
            logger.info(
                f"[{self.venue.protocol}] Run {run_id} completed: "
                f"{progress.events_stored} events, {progress.markets_stored} markets, "
                f"{progress.trades_stored} trades, {progress.traders_stored} traders"
            )

        except Exception as e:
            status.current_phase = PipelinePhase.FAILED
            status.error_message = str(e) or e.__class__.__name__
            logger.exception(f"[{self.venue.protocol}] Run {run_id} failed: {e}")

        finally:
            status.completed_at = utcnow()
            try:
                await self.run_log.record_end(
                    run_id,
                    run_status,
                    {
                        "events_fetched": progress.events_fetched,
                        "markets_fetched": progress.markets_fetched,
                        "trades_fetched": progress.trades_fetched,
                        "traders_fetched": progress.traders_fetched,
                        "positions_fetched": progress.positions_fetched,
                    },
                    status.completed_at,
                    status.error_message,
                    protocol=self.venue.protocol,
                    started_at=status.started_at,
                )
            except Exception as e:
                logger.error(f"Failed to record end of run {run_id}: {e}")
            finally:
                status.is_running = False
                self._running = False

    # ==================== Phases ====================

    async def _fetch_events(self, config: PipelineConfig):
        self._set_phase(PipelinePhase.FETCHING_EVENTS)
        try:
            self._events = await self.venue.fetch_events(max_events=config.max_events)
        except UpstreamFetchError as e:
            raise PipelineFatalError(f"Events fetch failed: {e}", phase="events") from e
        self._status.progress.events_fetched = len(self._events)

    async def _fetch_markets(self, config: PipelineConfig):
        self._set_phase(PipelinePhase.FETCHING_MARKETS)
        try:
            self._markets = await self.venue.fetch_markets(active_only=True, max_markets=config.max_markets)
        except UpstreamFetchError as e:
            raise PipelineFatalError(f"Markets fetch failed: {e}", phase="markets") from e
        self._status.progress.markets_fetched = len(self._markets)
        self._status.progress.active_markets = len(self._markets)

    async def _fetch_prices(self):
        self._set_phase(PipelinePhase.FETCHING_PRICES)
        self._prices = await self.venue.fetch_prices(self._markets)
        self._status.progress.prices_fetched = len(self._prices)

    async def _fetch_orderbooks(self):
        self._set_phase(PipelinePhase.FETCHING_ORDERBOOKS)
        self._orderbooks = await self.venue.fetch_orderbooks(self._markets)
        self._status.progress.orderbooks_fetched = len(self._orderbooks)

        snapshots = self.venue.orderbook_snapshots(self._markets, self._orderbooks)
        self._status.progress.orderbooks_stored += await self.writer.store_orderbooks(snapshots)

    async def _store_markets_and_events(self):
        markets = await self._store_markets()
        events = self.venue.transform_events(self._events, markets)
        self._status.progress.events_stored += await self.writer.store_events(events)

    async def _store_markets(self) -> List[dict]:
        markets = self.venue.transform_markets(
            self._markets, self._events, self._prices, self._orderbooks, self._activity
        )
        stored = await self.writer.store_markets(markets)
        # Restoring the same markets later is an update, not new rows
        self._status.progress.markets_stored = max(self._status.progress.markets_stored, stored)
        return markets

    async def _fetch_trades(self, run_id: str, config: PipelineConfig):
        """
        Fetch trades market by market, flushing to storage whenever a full
        batch has accumulated and checkpointing after every clean flush.

        Once a flush loses records no further checkpoint is written, so the
        newest checkpoint never points past unstored trades, and the resume
        marker is only cleared when every flush of the phase was complete.
        """
        self._set_phase(PipelinePhase.FETCHING_TRADES)
        progress = self._status.progress
        protocol = self.venue.protocol
        batch_size = config.store_batch_size
        track_activity = config.enable_market_activity and self.venue.supports_market_activity

        start_index = 0
        saved = await self._load_checkpoint()
        if saved:
            checkpoint = TradesCheckpoint.from_dict(saved)
            if checkpoint.last_market_index < len(self._markets):
                start_index = checkpoint.last_market_index
                progress.trades_stored = checkpoint.trades_stored
                progress.trades_fetched = checkpoint.trades_fetched
                logger.info(
                    f"[{protocol}] Resuming trades at market {start_index}/{len(self._markets)} "
                    f"({checkpoint.trades_stored} already stored)"
                )
            else:
                logger.warning(f"[{protocol}] Ignoring checkpoint past the end of the market list: {saved}")

        clean = True

        async def flush() -> bool:
            nonlocal clean
            pending = self._trade_buffer.drain()
            if not pending:
                return clean
            stored = await self.writer.store_trades(pending)
            progress.trades_stored += stored
            logger.info(f"[{protocol}] Flushed {stored}/{len(pending)} trades")
            if stored < len(pending):
                if clean:
                    logger.warning(f"[{protocol}] Trades lost in flush, checkpoints frozen for this run")
                clean = False
            return clean

        async def on_market_done(index: int, market: dict, raw_trades: List[dict]) -> bool:
            trades = self.venue.transform_trades(market, raw_trades)
            progress.trades_fetched += len(trades)

            if trades:
                self._trade_buffer.add(str(market.get("id", "")), trades)

            if track_activity:
                activity = self.venue.compute_activity(market, trades)
                if activity is not None:
                    self._activity[self.venue.market_label(market)] = activity
                    progress.market_activity_fetched = len(self._activity)

            if len(self._trade_buffer) >= batch_size:
                if await flush():
                    await self._save_checkpoint(
                        run_id,
                        TradesCheckpoint(
                            last_market_index=index + 1,
                            trades_stored=progress.trades_stored,
                            trades_fetched=progress.trades_fetched,
                        ),
                    )

            if config.max_total_trades and progress.trades_fetched >= config.max_total_trades:
                logger.info(f"[{protocol}] Reached trade cap ({progress.trades_fetched}/{config.max_total_trades})")
                return False
            return True

        fetcher = TradeFetcher(self.venue.fetch_market_trades, inter_market_delay=self.inter_market_delay)
        stats = await fetcher.fetch_all(
            self._markets,
            start_index=start_index,
            on_market_done=on_market_done,
            market_label=self.venue.market_label,
        )

        if await flush():
            await self._clear_checkpoint()
        else:
            logger.warning(f"[{protocol}] Keeping trades checkpoint, some trades were not stored")

        logger.info(
            f"[{protocol}] Trades phase done: {progress.trades_fetched} fetched, "
            f"{progress.trades_stored} stored, {stats['failed_markets']} markets failed"
        )

    # Checkpoint failures are logged and never fail the run

    async def _load_checkpoint(self) -> Optional[dict]:
        try:
            return await self.checkpoints.load(self.venue.protocol, TRADES_PHASE)
        except SQLAlchemyError as e:
            logger.warning(f"[{self.venue.protocol}] Could not load trades checkpoint, starting from 0: {e}")
            return None

    async def _save_checkpoint(self, run_id: str, checkpoint: TradesCheckpoint):
        try:
            await self.checkpoints.save(run_id, self.venue.protocol, TRADES_PHASE, checkpoint.to_dict())
        except SQLAlchemyError as e:
            logger.warning(f"[{self.venue.protocol}] Could not save trades checkpoint: {e}")

    async def _clear_checkpoint(self):
        try:
            await self.checkpoints.clear(self.venue.protocol, TRADES_PHASE)
        except SQLAlchemyError as e:
            logger.warning(f"[{self.venue.protocol}] Could not clear trades checkpoint: {e}")

    async def _fetch_traders(self, config: PipelineConfig):
        self._set_phase(PipelinePhase.FETCHING_TRADERS)
        progress = self._status.progress

        traders = await self.venue.fetch_traders(config.top_traders_limit)
        progress.traders_fetched = len(traders)
        progress.traders_stored += await self.writer.store_traders(traders)

        if config.enable_trader_positions and traders:
            positions = await self.venue.fetch_positions([t["user_address"] for t in traders])
            progress.positions_fetched = len(positions)
            progress.positions_stored += await self.writer.store_positions(positions)
