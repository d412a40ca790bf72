"""
Pipeline run configuration and test-mode presets.
"""

from dataclasses import dataclass, fields, asdict
from typing import Optional, Union

TEST_MODE_PRESETS = {
    "quick": {"max_events": 50, "max_markets": 500, "max_total_trades": 5000},
    "moderate": {"max_events": 1000, "max_markets": 10000, "max_total_trades": 100000},
    "production": {"max_events": 0, "max_markets": 0, "max_total_trades": 0},
}


@dataclass
class PipelineConfig:
    """
    Feature flags and caps for one run.

    Caps of 0 mean unlimited. Trader, position and activity phases only
    run on venues that support them.
    """
    max_events: int = 0
    max_markets: int = 0
    max_total_trades: int = 0
    top_traders_limit: int = 100

    enable_price_fetch: bool = True
    enable_orderbook_fetch: bool = True
    enable_market_activity: bool = False
    enable_trader_fetch: bool = True
    enable_trader_positions: bool = False

    store_batch_size: int = 500
    test_mode: Optional[str] = None

    def validate(self):
        for name in ("max_events", "max_markets", "max_total_trades", "top_traders_limit"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.store_batch_size < 1:
            raise ValueError(f"store_batch_size must be >= 1, got {self.store_batch_size}")
        if self.test_mode is not None and self.test_mode not in TEST_MODE_PRESETS:
            raise ValueError(
                f"Unknown test mode '{self.test_mode}', expected one of {sorted(TEST_MODE_PRESETS)}"
            )

    def to_dict(self) -> dict:
        return asdict(self)


def resolve_config(
    overrides: Optional[Union[dict, PipelineConfig]] = None,
    defaults: Optional[dict] = None,
) -> PipelineConfig:
    """
    Build the effective config for a run.

    Layers, lowest first: built-in defaults, `defaults` (from the app
    config file), the test-mode preset, then explicit overrides.

    Raises:
        ValueError: unknown keys, negative caps or an unknown test mode
    """
    if isinstance(overrides, PipelineConfig):
        # Only fields changed from their defaults count as explicit
        overrides = {
            f.name: getattr(overrides, f.name)
            for f in fields(PipelineConfig)
            if getattr(overrides, f.name) != f.default
        }
    overrides = dict(overrides or {})
    defaults = dict(defaults or {})

    known = {f.name for f in fields(PipelineConfig)}
    unknown = (set(overrides) | set(defaults)) - known
    if unknown:
        raise ValueError(f"Unknown pipeline config keys: {sorted(unknown)}")

    test_mode = overrides.get("test_mode", defaults.get("test_mode"))
    if test_mode is not None and test_mode not in TEST_MODE_PRESETS:
        raise ValueError(f"Unknown test mode '{test_mode}', expected one of {sorted(TEST_MODE_PRESETS)}")

    merged = dict(defaults)
    if test_mode:
        merged.update(TEST_MODE_PRESETS[test_mode])
    merged.update(overrides)

    config = PipelineConfig(**merged)
    config.validate()
    return config
