"""
Rate-limited JSON HTTP client shared by all venue clients.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import aiohttp
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import UpstreamFetchError
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# (method, path) -> extra auth headers. Opaque to this package.
CredentialProvider = Callable[[str, str], Dict[str, str]]

DEFAULT_TIMEOUT = 30.0
MAX_RETRY_AFTER = 60.0


def clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """Drop None values and render booleans the way the venue APIs expect"""
    if not params:
        return None
    cleaned = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            cleaned[key] = "true" if value else "false"
        else:
            cleaned[key] = str(value)
    return cleaned


class ApiClient:
    """
    JSON client for one upstream API.

    Every attempt acquires a permit from the limiter first. Network errors,
    timeouts and HTTP errors are retried with exponential backoff; when
    retries are exhausted the failure surfaces as UpstreamFetchError.
    """

    def __init__(
        self,
        base_url: str,
        limiter: RateLimiter,
        timeout: float = DEFAULT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        credentials: Optional[CredentialProvider] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Args:
            base_url: Root URL, without trailing slash
            limiter: Token bucket gating this API
            timeout: Total per-request timeout in seconds
            headers: Static headers sent with every request
            credentials: Optional provider of per-request auth headers
            session: Optional aiohttp session (created if not provided)
        """
        self.base_url = base_url.rstrip("/")
        self.limiter = limiter
        self.timeout = timeout
        self.headers = {"Accept": "application/json", **(headers or {})}
        self.credentials = credentials
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create an aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self.headers,
            )
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the session if we own it"""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json_data: Any = None) -> Any:
        return await self.request("POST", path, json_data=json_data)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
    ) -> Any:
        """
        Make a rate-limited request.

        Returns:
            Decoded JSON body, or None for 404
        """
        url = f"{self.base_url}{path}"
        try:
            return await self._request_with_retry(method, url, path, clean_params(params), json_data)
        except aiohttp.ClientResponseError as e:
            raise UpstreamFetchError(
                f"{method} {url} returned {e.status}: {e.message}", url=url, status=e.status
            ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamFetchError(f"{method} {url} failed: {e!r}", url=url) from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def _request_with_retry(
        self,
        method: str,
        url: str,
        path: str,
        params: Optional[Dict[str, str]],
        json_data: Any,
    ) -> Any:
        await self.limiter.acquire()
        session = await self._get_session()
        headers = self.credentials(method, path) if self.credentials else None

        async with session.request(
            method, url, params=params, json=json_data, headers=headers
        ) as response:
            if response.status == 429:
                try:
                    retry_after = min(float(response.headers.get("Retry-After", 1)), MAX_RETRY_AFTER)
                except ValueError:
                    retry_after = 1.0
                logger.warning(f"Rate limited by {self.base_url}, waiting {retry_after}s")
                await asyncio.sleep(retry_after)
                response.raise_for_status()

            if response.status == 404:
                return None

            if response.status >= 400:
                text = await response.text()
                logger.error(f"API error {response.status} from {url}: {text[:200]}")
            response.raise_for_status()

            return await response.json(content_type=None)
