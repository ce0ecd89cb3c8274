"""High-level CSE client wiring the gateway, walker, fetcher and stream."""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

from .clients.rest import AuthMode, RequestGateway
from .clients.stream import ConnectFunc, RealtimeStreamManager, StreamEvent, channel_for
from .config.settings import CSEClientSettings
from .errors import DataIntegrityError
from .historical import DateLike, HistoricalFetcher
from .models import Instrument, Interval, OHLCVBar, Quote, require_symbol
from .pagination import PaginationWalker
from .utils.retry import SleepFunc

logger = logging.getLogger(__name__)


class InstrumentCache:
    """Instruments keyed by symbol, each entry expiring after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Instrument]] = {}

    def get(self, symbol: str) -> Optional[Instrument]:
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        expires_at, instrument = entry
        if self._clock() >= expires_at:
            del self._entries[symbol]
            return None
        return instrument

    def put(self, instrument: Instrument):
        self._entries[instrument.symbol] = (self._clock() + self.ttl_seconds, instrument)

    def __len__(self):
        return len(self._entries)


class CSEClient:
    """
    Async client for the Colombo Stock Exchange market-data API.

    Usage::

        async with CSEClient(load_settings("config/local.yaml")) as client:
            quote = await client.get_quote("CSE:ABC.N")
    """

    def __init__(
        self,
        settings: Optional[CSEClientSettings] = None,
        session=None,
        connect: Optional[ConnectFunc] = None,
        sleep: SleepFunc = asyncio.sleep,
        auth: Union[AuthMode, str, None] = None
    ):
        self.settings = settings or CSEClientSettings()
        api = self.settings.api

        if auth is None:
            if api.token:
                auth = AuthMode.BEARER
            elif api.api_key:
                auth = AuthMode.API_KEY
            else:
                auth = AuthMode.NONE
        self.auth = AuthMode(auth)

        self.gateway = RequestGateway(api, self.settings.retry, session=session, sleep=sleep)
        self.walker = PaginationWalker(self.gateway)
        self.historical = HistoricalFetcher(self.gateway, api.max_window_days, auth=self.auth)
        self.stream_manager = RealtimeStreamManager(
            api, self.settings.stream, self.settings.retry, connect=connect, sleep=sleep
        )
        self.instruments = InstrumentCache(api.instrument_cache_ttl_seconds)

        logger.info(f"CSEClient initialized for {api.base_url} (auth={self.auth.value})")

    async def __aenter__(self):
        await self.gateway.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.stream_manager.close()
        await self.gateway.close()

    # -- REST endpoints ----------------------------------------------------

    async def search_instruments(
        self,
        search: Optional[str] = None,
        sector: Optional[str] = None,
        limit: int = 50,
        page: Optional[int] = None
    ) -> AsyncIterator[Instrument]:
        """Walk ``/instruments`` lazily, caching every instrument seen."""
        async for record in self.walker.paginate(
            '/instruments',
            {'search': search, 'sector': sector},
            limit=limit,
            page=page,
            auth=self.auth
        ):
            instrument = Instrument.from_wire(record)
            self.instruments.put(instrument)
            yield instrument

    async def get_instrument(self, symbol: str) -> Instrument:
        require_symbol(symbol)
        instrument = self.instruments.get(symbol)
        if instrument is not None:
            return instrument

        body = await self.gateway.send('GET', f"/instruments/{symbol}", auth=self.auth)
        instrument = Instrument.from_wire(_unwrap(body))
        self.instruments.put(instrument)
        return instrument

    async def get_quote(self, symbol: str) -> Quote:
        require_symbol(symbol)
        body = await self.gateway.send('GET', f"/quotes/{symbol}", auth=self.auth)
        return Quote.from_wire({'symbol': symbol, **_unwrap(body)})

    async def get_history(
        self,
        symbol: str,
        start_date: DateLike,
        end_date: DateLike,
        interval: Union[Interval, str] = Interval.DAILY
    ) -> List[OHLCVBar]:
        return await self.historical.fetch_history(symbol, start_date, end_date, interval)

    async def get_market_summary(self) -> Dict[str, Any]:
        return _unwrap(await self.gateway.send('GET', '/market/summary', auth=self.auth))

    async def get_corporate_actions(self, symbol: str) -> List[Dict[str, Any]]:
        require_symbol(symbol)
        body = await self.gateway.send('GET', f"/corporate-actions/{symbol}", auth=self.auth)
        if isinstance(body, dict):
            body = body.get('data', body.get('actions'))
        if not isinstance(body, list):
            raise DataIntegrityError(f"Corporate actions for {symbol} is not a list")
        return body

    # -- streaming ---------------------------------------------------------

    async def subscribe_quotes(self, *symbols: str):
        await self.stream_manager.subscribe(*(channel_for('quotes', s) for s in symbols))

    async def subscribe_trades(self, *symbols: str):
        await self.stream_manager.subscribe(*(channel_for('trades', s) for s in symbols))

    def stream(self) -> AsyncIterator[StreamEvent]:
        return self.stream_manager.stream()

    def get_stats(self) -> Dict[str, Any]:
        return {
            'rest': self.gateway.get_stats(),
            'stream': self.stream_manager.get_stats(),
            'cached_instruments': len(self.instruments)
        }


def _unwrap(body: Any) -> Dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get('data'), dict):
        body = body['data']
    if not isinstance(body, dict):
        raise DataIntegrityError(f"Expected a JSON object, got {type(body).__name__}")
    return body
