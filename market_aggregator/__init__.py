"""
Multi-venue prediction market aggregation engine.
"""

__version__ = "0.1.0"
