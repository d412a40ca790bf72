"""
Venue data sources.
"""

from .base import BaseVenue
from .polymarket import PolymarketVenue
from .kalshi import KalshiVenue
from .dflow import DFlowVenue

__all__ = ['BaseVenue', 'PolymarketVenue', 'KalshiVenue', 'DFlowVenue']
