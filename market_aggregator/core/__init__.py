from .rate_limiter import RateLimiter, RateLimitManager
from .http import ApiClient, CredentialProvider
from .polymarket_client import PolymarketClient
from .kalshi_client import KalshiClient
from .dflow_client import DFlowClient

__all__ = [
    "RateLimiter",
    "RateLimitManager",
    "ApiClient",
    "CredentialProvider",
    "PolymarketClient",
    "KalshiClient",
    "DFlowClient",
]
