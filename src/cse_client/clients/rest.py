"""CSE REST API gateway: auth, timeouts, retries, rate limiting and conditional GET."""

import asyncio
import aiohttp
import logging
import random
import time
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from ..config.settings import APIConfig, RetryConfig
from ..errors import (
    CSEClientError,
    InvalidArgument,
    TRANSIENT_ERRORS,
    classify_exception,
    classify_status,
)
from ..utils.logging import log_with_context
from ..utils.rate_limit import RateLimiter
from ..utils.retry import BackoffPolicy, SleepFunc, exponential_backoff

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool, date, None]
CacheKey = Tuple[str, Tuple[Tuple[str, str], ...]]


class AuthMode(str, Enum):
    """How a request is authenticated."""
    NONE = "none"
    BEARER = "bearer"
    API_KEY = "api_key"


@dataclass
class CachedResponse:
    """Validators and body of the last 200 response for a GET."""
    body: Any
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class RequestGateway:
    """
    Sends requests to the CSE REST API.

    Every call goes through the concurrency semaphore and the shared token
    bucket. 429, 5xx, timeouts and connection failures are retried under the
    backoff policy; other 4xx fail at once. GET responses carrying an ETag or
    Last-Modified header are cached and revalidated with conditional headers.
    """

    USER_AGENT = 'CSEClient/1.0'

    def __init__(
        self,
        config: APIConfig,
        retry_config: RetryConfig,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: SleepFunc = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        self.config = config
        self.retry_config = retry_config
        self.policy = BackoffPolicy.from_config(retry_config, rng=rng)
        self.session = session
        self._owns_session = session is None
        self._sleep = sleep
        self.rate_limiter = RateLimiter(config.rate_limit_requests_per_minute)
        self._semaphore = asyncio.Semaphore(config.max_concurrent_requests)
        self._cache: Dict[CacheKey, CachedResponse] = {}

        self.stats = {
            'requests_sent': 0,
            'responses_ok': 0,
            'retries': 0,
            'cache_hits': 0,
            'errors': 0,
            'last_request_time': None
        }

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
                headers={'User-Agent': self.USER_AGENT, 'Accept': 'application/json'}
            )
            self._owns_session = True
        return self.session

    async def close(self):
        """Close the HTTP session if this gateway created it."""
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    def build_url(self, path: str) -> str:
        if not isinstance(path, str) or not path:
            raise InvalidArgument("Path must be a non-empty string")
        if '://' in path or path.startswith('//'):
            raise InvalidArgument(f"Path must be relative to the base URL, got {path!r}")
        return f"{self.config.base_url}/{path.lstrip('/')}"

    @staticmethod
    def normalize_params(params: Optional[Mapping[str, Scalar]]) -> Dict[str, str]:
        """Encode scalar query parameters; ``None`` values are dropped."""
        normalized: Dict[str, str] = {}
        if not params:
            return normalized

        for key, value in params.items():
            if not isinstance(key, str):
                raise InvalidArgument(f"Parameter names must be strings, got {key!r}")
            if value is None:
                continue
            if isinstance(value, bool):
                normalized[key] = 'true' if value else 'false'
            elif isinstance(value, datetime):
                normalized[key] = value.isoformat()
            elif isinstance(value, date):
                normalized[key] = value.isoformat()
            elif isinstance(value, (str, int, float)):
                normalized[key] = str(value)
            else:
                raise InvalidArgument(
                    f"Parameter {key!r} must be a scalar, got {type(value).__name__}"
                )
        return normalized

    def auth_headers(self, auth: Union[AuthMode, str, None]) -> Dict[str, str]:
        try:
            mode = AuthMode(auth or AuthMode.NONE)
        except ValueError:
            raise InvalidArgument(f"Unknown auth mode {auth!r}") from None

        if mode is AuthMode.BEARER:
            if not self.config.token:
                raise InvalidArgument("Bearer auth requested but no token is configured")
            return {'Authorization': f"Bearer {self.config.token}"}
        if mode is AuthMode.API_KEY:
            if not self.config.api_key:
                raise InvalidArgument("API key auth requested but no api_key is configured")
            return {'X-API-KEY': self.config.api_key}
        return {}

    async def send(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Scalar]] = None,
        auth: Union[AuthMode, str, None] = AuthMode.NONE,
        json: Any = None
    ) -> Any:
        """
        Send a request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to the configured base URL
            params: Scalar query parameters
            auth: Authentication mode
            json: Optional JSON request body

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            InvalidArgument: Bad path, params or auth mode
            ClientError: 4xx other than 429 (never retried)
            RateLimited, ServerError, Timeout, ConnectionLost: after retries
            DataIntegrityError: Undecodable response body
        """
        method = method.upper()
        url = self.build_url(path)
        query = self.normalize_params(params)
        headers = self.auth_headers(auth)
        cache_key = (path, tuple(sorted(query.items()))) if method == 'GET' else None

        async def _request():
            async with self._semaphore:
                await self.rate_limiter.acquire()
                return await self._attempt(method, url, query, headers, json, cache_key)

        def _on_retry(attempt: int, error: BaseException, delay: float):
            self.stats['retries'] += 1
            log_with_context(
                logger, logging.INFO, f"Retrying {method} {path} after {error!r}",
                attempt=attempt, delay=round(delay, 3), path=path
            )

        try:
            return await exponential_backoff(
                _request,
                self.policy,
                exceptions=TRANSIENT_ERRORS,
                sleep=self._sleep,
                on_retry=_on_retry
            )
        except CSEClientError as e:
            self.stats['errors'] += 1
            logger.error(f"{method} {path} failed: {e!r}")
            raise

    async def _attempt(
        self,
        method: str,
        url: str,
        query: Dict[str, str],
        headers: Dict[str, str],
        json_body: Any,
        cache_key: Optional[CacheKey]
    ) -> Any:
        session = self._ensure_session()
        request_headers = dict(headers)
        cached = self._cache.get(cache_key) if cache_key else None
        if cached is not None:
            if cached.etag:
                request_headers['If-None-Match'] = cached.etag
            if cached.last_modified:
                request_headers['If-Modified-Since'] = cached.last_modified

        self.stats['requests_sent'] += 1
        self.stats['last_request_time'] = time.time()
        logger.debug(f"{method} {url} params={query}")

        try:
            async with session.request(
                method,
                url,
                params=query,
                headers=request_headers,
                json=json_body,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            ) as response:
                status = response.status

                if status == 304 and cached is not None:
                    self.stats['cache_hits'] += 1
                    logger.debug(f"Not modified, serving cached body for {url}")
                    return cached.body

                if 200 <= status < 300:
                    body = None if status == 204 else await response.json(content_type=None)
                    self.stats['responses_ok'] += 1
                    if cache_key is not None and status == 200:
                        self._remember(cache_key, body, response.headers)
                    return body

                error_body = await response.text()
                raise classify_status(status, error_body, response.headers, response.reason or "")

        except CSEClientError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

    def _remember(self, cache_key: CacheKey, body: Any, response_headers: Mapping[str, str]):
        etag = response_headers.get('ETag')
        last_modified = response_headers.get('Last-Modified')
        if etag or last_modified:
            self._cache[cache_key] = CachedResponse(body=body, etag=etag, last_modified=last_modified)
        else:
            self._cache.pop(cache_key, None)

    def clear_cache(self):
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get request statistics."""
        return {
            **self.stats,
            'cached_resources': len(self._cache),
            'rate_limit_wait_seconds': self.rate_limiter.total_wait_seconds
        }
