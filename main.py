#!/usr/bin/env python3
"""
Market Aggregator - Prediction Market Data Pipeline

Pulls events, markets, prices, orderbooks, trades and traders from
Polymarket, Kalshi and DFlow into one SQLite store, and streams live
trades over WebSockets.

Usage:
    python main.py run --protocol polymarket                    # Full pipeline run
    python main.py run --protocol kalshi --test-mode quick      # Capped run
    python main.py stream --protocol kalshi                     # Live trades
    python main.py --config my.yaml run --protocol dflow        # Custom config
"""

import asyncio
import argparse
import copy
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

from market_aggregator.core import DFlowClient, KalshiClient, PolymarketClient, RateLimitManager
from market_aggregator.database import Database, StorageWriter
from market_aggregator.ingestion import KalshiFeed, PolymarketFeed, RealtimeIngestionService
from market_aggregator.pipeline import AggregationPipeline, PipelinePhase, TEST_MODE_PRESETS
from market_aggregator.platforms import DFlowVenue, KalshiVenue, PolymarketVenue

PROTOCOLS = ("polymarket", "kalshi", "dflow")
STREAM_PROTOCOLS = ("polymarket", "kalshi")


def api_key_credentials(api_key: str):
    """Credential provider sending a static API key header"""
    def provide(method: str, path: str) -> dict:
        return {"KALSHI-ACCESS-KEY": api_key}
    return provide


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class MarketAggregator:
    """
    Main application class for Market Aggregator.

    Wires together:
    - Configuration (defaults, YAML file, environment)
    - Database and storage writer
    - Venue clients and the aggregation pipeline
    - Real-time ingestion service
    """

    def __init__(self, config_path: str = "config.yaml"):
        """
        Initialize Market Aggregator.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = self._load_config()

        self.db: Optional[Database] = None
        self.limits = RateLimitManager()
        self.pipeline: Optional[AggregationPipeline] = None
        self.realtime: Optional[RealtimeIngestionService] = None
        self._venue = None

    def _load_config(self) -> dict:
        """Load configuration from YAML file"""
        load_dotenv()

        config = self._default_config()
        config_file = Path(self.config_path)
        if config_file.exists():
            with open(config_file) as f:
                config = _deep_merge(config, yaml.safe_load(f) or {})
        else:
            logger.warning(f"Config file not found: {self.config_path}, using defaults")

        return self._apply_env_overrides(config)

    def _default_config(self) -> dict:
        """Return default configuration"""
        return {
            'database': {
                'path': 'market_aggregator.db'
            },
            'logging': {
                'level': 'INFO',
                'file': None
            },
            'platforms': {
                'polymarket': {
                    'gamma_url': 'https://gamma-api.polymarket.com',
                    'clob_url': 'https://clob.polymarket.com',
                    'data_url': 'https://data-api.polymarket.com',
                    'websocket_url': 'wss://ws-subscriptions-clob.polymarket.com/ws/market',
                    'rate_limits': {'gamma': 5, 'clob': 10, 'data': 5},
                    'timeouts': {'gamma': 30, 'clob': 30, 'data': 15}
                },
                'kalshi': {
                    'rest_url': 'https://api.elections.kalshi.com/trade-api/v2',
                    'websocket_url': 'wss://api.elections.kalshi.com/trade-api/ws/v2',
                    'rate_limit': 5,
                    'timeout': 30
                },
                'dflow': {
                    'metadata_url': 'https://prediction-markets-api.dflow.net',
                    'rate_limit': 10,
                    'timeout': 30
                }
            },
            'pipeline': {
                'top_traders_limit': 100,
                'enable_price_fetch': True,
                'enable_orderbook_fetch': True,
                'enable_market_activity': False,
                'enable_trader_fetch': True,
                'enable_trader_positions': False,
                'store_batch_size': 500
            },
            'realtime': {
                'max_reconnect_attempts': 10,
                'reconnect_delay': 5,
                'ping_interval': 10
            }
        }

    def _apply_env_overrides(self, config: dict) -> dict:
        """Apply environment variable overrides to config"""
        if os.getenv('DATABASE_PATH'):
            config['database']['path'] = os.getenv('DATABASE_PATH')

        if os.getenv('LOG_LEVEL'):
            config['logging']['level'] = os.getenv('LOG_LEVEL').upper()

        platforms = config.setdefault('platforms', {})
        if os.getenv('KALSHI_API_KEY'):
            platforms.setdefault('kalshi', {})['api_key'] = os.getenv('KALSHI_API_KEY')

        if os.getenv('DFLOW_API_KEY'):
            platforms.setdefault('dflow', {})['api_key'] = os.getenv('DFLOW_API_KEY')

        if os.getenv('PIPELINE_TEST_MODE'):
            config.setdefault('pipeline', {})['test_mode'] = os.getenv('PIPELINE_TEST_MODE')

        return config

    def _setup_logging(self):
        """Configure logging"""
        log_config = self.config.get('logging', {})
        level = log_config.get('level', 'INFO')

        # Remove default handler
        logger.remove()

        # Add console handler
        logger.add(
            sys.stderr,
            level=level,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
        )

        # Add file handler if configured
        log_file = log_config.get('file')
        if log_file:
            logger.add(
                log_file,
                level=level,
                rotation="10 MB",
                retention="7 days"
            )

        # Ingestion and core modules log through the standard library
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(levelname)-8s | %(name)s - %(message)s",
        )
        logging.getLogger('aiohttp').setLevel(logging.WARNING)
        logging.getLogger('websockets').setLevel(logging.WARNING)

    async def initialize(self):
        """Set up logging and the database"""
        self._setup_logging()

        db_path = self.config.get('database', {}).get('path', 'market_aggregator.db')
        self.db = Database(db_path)
        await self.db.initialize()
        logger.info(f"Database initialized: {db_path}")

    def _build_venue(self, protocol: str):
        platforms = self.config.get('platforms', {})
        venue_config = platforms.get(protocol, {})

        if protocol == 'polymarket':
            return PolymarketVenue(PolymarketClient(venue_config, self.limits))
        if protocol == 'kalshi':
            credentials = None
            if venue_config.get('api_key'):
                credentials = api_key_credentials(venue_config['api_key'])
            return KalshiVenue(KalshiClient(venue_config, self.limits, credentials))
        if protocol == 'dflow':
            return DFlowVenue(DFlowClient(venue_config, self.limits))
        raise ValueError(f"Unknown protocol: {protocol}")

    def _build_feed(self, protocol: str):
        venue_config = self.config.get('platforms', {}).get(protocol, {})
        url = venue_config.get('websocket_url')

        if protocol == 'kalshi':
            credentials = None
            if venue_config.get('api_key'):
                credentials = api_key_credentials(venue_config['api_key'])
            return KalshiFeed(credentials=credentials, url=url)
        if protocol == 'polymarket':
            return PolymarketFeed(url=url)
        raise ValueError(f"No real-time feed for protocol: {protocol}")

    async def run_pipeline(self, protocol: str, test_mode: Optional[str] = None, poll_interval: float = 5.0) -> bool:
        """
        Run the pipeline once and wait for it to finish.

        Returns:
            True if the run completed
        """
        pipeline_defaults = dict(self.config.get('pipeline', {}))
        self._venue = self._build_venue(protocol)
        self.pipeline = AggregationPipeline(
            self._venue,
            self.db,
            writer=StorageWriter(self.db, pipeline_defaults.get('store_batch_size', 500)),
            defaults=pipeline_defaults,
        )

        overrides = {'test_mode': test_mode} if test_mode else None
        run_id = self.pipeline.start(overrides)
        logger.info(f"Pipeline run {run_id} started for {protocol}")

        while self.pipeline.is_running:
            await asyncio.sleep(poll_interval)
            status = self.pipeline.get_status()
            progress = status.progress
            logger.info(
                f"[{protocol}] {status.current_phase.value}: "
                f"{progress.markets_fetched} markets, {progress.trades_fetched} trades fetched, "
                f"{progress.trades_stored} stored"
            )

        status = self.pipeline.get_status()
        if status.current_phase == PipelinePhase.FAILED:
            logger.error(f"Pipeline run {run_id} failed: {status.error_message}")
            return False

        logger.info(f"Pipeline run {run_id} finished: {status.to_dict()['progress']}")
        return True

    async def stream(self, protocol: str):
        """Stream live trades until disconnected"""
        realtime_config = self.config.get('realtime', {})
        self.realtime = RealtimeIngestionService(
            self._build_feed(protocol),
            StorageWriter(self.db),
            reconnect_delay=realtime_config.get('reconnect_delay', 5),
            max_reconnect_attempts=realtime_config.get('max_reconnect_attempts', 10),
            ping_interval=realtime_config.get('ping_interval', 10),
        )

        count = await self.realtime.subscribe_to_active_markets(self.db)
        if not count:
            logger.warning(f"No active {protocol} markets stored; run the pipeline first")

        await self.realtime.connect()
        logger.info(f"Stream ended: {self.realtime.get_status()}")

    async def stop(self):
        """Stop the stream and release connections"""
        logger.info("Stopping Market Aggregator...")

        if self.realtime:
            await self.realtime.disconnect()

        if self._venue:
            await self._venue.close()

        if self.db:
            await self.db.close()

        logger.info("Market Aggregator stopped")


async def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Market Aggregator - Prediction Market Data Pipeline"
    )
    parser.add_argument(
        '--config', '-c',
        default='config.yaml',
        help='Path to configuration file'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help='Run the aggregation pipeline once')
    run_parser.add_argument('--protocol', '-p', choices=PROTOCOLS, required=True)
    run_parser.add_argument(
        '--test-mode', '-t',
        choices=sorted(TEST_MODE_PRESETS),
        help='Cap events, markets and trades with a preset'
    )

    stream_parser = subparsers.add_parser('stream', help='Stream live trades over WebSocket')
    stream_parser.add_argument('--protocol', '-p', choices=STREAM_PROTOCOLS, required=True)

    args = parser.parse_args()

    app = MarketAggregator(args.config)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        if app.realtime:
            asyncio.create_task(app.realtime.disconnect())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    success = True
    try:
        await app.initialize()
        if args.command == 'run':
            success = await app.run_pipeline(args.protocol, args.test_mode)
        else:
            await app.stream(args.protocol)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    asyncio.run(main())
