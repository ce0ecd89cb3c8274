"""Historical OHLCV retrieval with range splitting and merge checks."""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from .clients.rest import AuthMode, RequestGateway
from .errors import DataIntegrityError, InvalidArgument, RequestTooLarge
from .models import Interval, OHLCVBar, require_symbol

logger = logging.getLogger(__name__)

DateLike = Union[date, str]

BAR_FIELDS = ('data', 'bars', 'history', 'items')


def parse_date(value: DateLike, name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise InvalidArgument(f"{name} must be YYYY-MM-DD, got {value!r}") from None
    raise InvalidArgument(f"{name} must be a date or YYYY-MM-DD string, got {type(value).__name__}")


def split_range(start: date, end: date, max_days: int) -> List[Tuple[date, date]]:
    """Split an inclusive date range into windows of at most ``max_days`` days."""
    windows = []
    window_start = start
    while window_start <= end:
        window_end = min(window_start + timedelta(days=max_days - 1), end)
        windows.append((window_start, window_end))
        window_start = window_end + timedelta(days=1)
    return windows


def halve_range(start: date, end: date) -> List[Tuple[date, date]]:
    midpoint = start + timedelta(days=(end - start).days // 2)
    return [(start, midpoint), (midpoint + timedelta(days=1), end)]


def merge_bars(bars: List[OHLCVBar]) -> List[OHLCVBar]:
    """
    Collapse duplicate keys and sort ascending by timestamp.

    Raises:
        DataIntegrityError: Two bars share a key but disagree on close
    """
    merged: Dict[Any, OHLCVBar] = {}
    for bar in bars:
        existing = merged.get(bar.key)
        if existing is None:
            merged[bar.key] = bar
        elif existing.close != bar.close:
            raise DataIntegrityError(
                f"Conflicting close for {bar.symbol} at {bar.timestamp.isoformat()}: "
                f"{existing.close} != {bar.close}",
                details={
                    'symbol': bar.symbol,
                    'timestamp': bar.timestamp.isoformat(),
                    'closes': [str(existing.close), str(bar.close)],
                },
            )
    return sorted(merged.values(), key=lambda b: b.timestamp)


class HistoricalFetcher:
    """Fetches OHLCV bars from ``/historical/{symbol}`` over a date range."""

    def __init__(self, gateway: RequestGateway, max_window_days: Optional[int] = None,
                 auth: Union[AuthMode, str, None] = AuthMode.NONE):
        if max_window_days is not None and max_window_days < 1:
            raise InvalidArgument("max_window_days must be positive")
        self.gateway = gateway
        self.max_window_days = max_window_days
        self.auth = auth

    async def fetch_history(
        self,
        symbol: str,
        start_date: DateLike,
        end_date: DateLike,
        interval: Union[Interval, str] = Interval.DAILY
    ) -> List[OHLCVBar]:
        """
        Fetch bars for ``symbol`` between two inclusive dates.

        Raises:
            InvalidArgument: Bad symbol, dates or interval
            RequestTooLarge: Window still too large after halving once
            DataIntegrityError: Malformed rows or conflicting duplicates
        """
        require_symbol(symbol)
        start = parse_date(start_date, 'start_date')
        end = parse_date(end_date, 'end_date')
        if start > end:
            raise InvalidArgument(f"start_date {start} is after end_date {end}")
        interval = Interval.parse(interval)

        if self.max_window_days:
            windows = split_range(start, end, self.max_window_days)
        else:
            windows = [(start, end)]

        bars: List[OHLCVBar] = []
        for window_start, window_end in windows:
            bars.extend(await self._fetch_window(symbol, window_start, window_end, interval))

        # Providers may pad windows; bars outside the requested dates are discarded
        in_range = [bar for bar in bars if start <= bar.timestamp.date() <= end]
        merged = merge_bars(in_range)
        logger.info(
            f"Fetched {len(merged)} {interval.value} bars for {symbol} "
            f"from {start} to {end} in {len(windows)} window(s)"
        )
        return merged

    async def _fetch_window(self, symbol: str, start: date, end: date,
                            interval: Interval) -> List[OHLCVBar]:
        try:
            return await self._request(symbol, start, end, interval)
        except RequestTooLarge:
            if start == end:
                raise
            halves = halve_range(start, end)
            logger.warning(
                f"History window {start}..{end} for {symbol} too large, "
                f"retrying as {halves[0][0]}..{halves[0][1]} and {halves[1][0]}..{halves[1][1]}"
            )
            bars: List[OHLCVBar] = []
            for half_start, half_end in halves:
                bars.extend(await self._request(symbol, half_start, half_end, interval))
            return bars

    async def _request(self, symbol: str, start: date, end: date,
                       interval: Interval) -> List[OHLCVBar]:
        body = await self.gateway.send(
            'GET',
            f"/historical/{symbol}",
            {'start': start.isoformat(), 'end': end.isoformat(), 'interval': interval.value},
            auth=self.auth
        )
        return self.parse_bars(body, symbol, interval)

    @staticmethod
    def parse_bars(body: Any, symbol: str, interval: Interval) -> List[OHLCVBar]:
        rows = body
        if isinstance(body, dict):
            rows = next((body[f] for f in BAR_FIELDS if isinstance(body.get(f), list)), None)
        if not isinstance(rows, list):
            raise DataIntegrityError(f"Historical response for {symbol} has no bar list")

        bars = []
        for row in rows:
            if not isinstance(row, dict):
                raise DataIntegrityError(f"Bar row must be an object, got {row!r}")
            bars.append(OHLCVBar.from_wire(row, symbol, interval))
        return bars
