"""Market data models and their JSON wire codecs."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import DataIntegrityError, ErrorEnvelope, InvalidArgument

__all__ = [
    'ErrorEnvelope',
    'Interval',
    'Instrument',
    'Quote',
    'Trade',
    'OHLCVBar',
    'SubscriptionState',
    'Subscription',
    'QuoteBook',
    'parse_timestamp',
    'format_timestamp',
    'parse_decimal',
    'require_symbol',
]

PRICE_QUANTUM = Decimal('0.01')
SYMBOL_FORBIDDEN = set('/?#')


class Interval(str, Enum):
    """Bar intervals supported by the historical endpoint."""
    DAILY = "daily"
    MINUTE = "minute"

    @classmethod
    def parse(cls, value) -> "Interval":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidArgument(
                f"Unsupported interval {value!r}; expected one of "
                f"{', '.join(i.value for i in cls)}"
            ) from None


def require_symbol(symbol: Any) -> str:
    """Reject symbols that are empty or would escape their URL path segment."""
    if not isinstance(symbol, str) or not symbol.strip() or SYMBOL_FORBIDDEN & set(symbol):
        raise InvalidArgument(f"Invalid symbol {symbol!r}")
    return symbol


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 string, date, epoch seconds/millis or datetime to UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Millisecond epochs are > 1e10 for any date after 1970-04-26
        seconds = value / 1000.0 if value > 1e10 else float(value)
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise DataIntegrityError(f"Invalid timestamp {value!r}") from None
    else:
        raise DataIntegrityError(f"Invalid timestamp {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a UTC datetime as ISO 8601 with a trailing ``Z``."""
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_decimal(value: Any, field_name: str = "value") -> Decimal:
    if value is None or isinstance(value, bool):
        raise DataIntegrityError(f"Missing or invalid {field_name}: {value!r}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise DataIntegrityError(f"Invalid {field_name}: {value!r}") from None
    if not result.is_finite():
        raise DataIntegrityError(f"Non-finite {field_name}: {value!r}")
    return result


def _optional_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    return None if value is None else parse_decimal(value, field_name)


def _parse_volume(value: Any) -> int:
    if value is None:
        return 0
    try:
        volume = int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        raise DataIntegrityError(f"Invalid volume: {value!r}") from None
    if volume < 0:
        raise DataIntegrityError(f"Negative volume: {volume}")
    return volume


def _require(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    raise DataIntegrityError(f"Missing field {names[0]!r} in {dict(data)!r}")


@dataclass(frozen=True)
class Instrument:
    """Listed instrument; immutable once fetched."""
    symbol: str
    name: str
    sector: Optional[str] = None
    lot_size: int = 1

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "Instrument":
        try:
            lot_size = int(data.get('lot_size', data.get('lotSize', 1)) or 1)
        except (TypeError, ValueError):
            raise DataIntegrityError(f"Invalid lot size in {dict(data)!r}") from None
        return cls(
            symbol=str(_require(data, 'symbol')),
            name=str(data.get('name') or ''),
            sector=data.get('sector'),
            lot_size=lot_size,
        )


@dataclass(frozen=True)
class Quote:
    """Top-of-book quote; later timestamps supersede earlier ones per symbol."""
    symbol: str
    last_price: Decimal
    bid: Optional[Decimal]
    ask: Optional[Decimal]
    volume: int
    timestamp: datetime

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "Quote":
        return cls(
            symbol=str(_require(data, 'symbol')),
            last_price=parse_decimal(_require(data, 'last_price', 'lastPrice', 'price'), 'last_price'),
            bid=_optional_decimal(data.get('bid'), 'bid'),
            ask=_optional_decimal(data.get('ask'), 'ask'),
            volume=_parse_volume(data.get('volume')),
            timestamp=parse_timestamp(_require(data, 'timestamp', 'time')),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'last_price': str(self.last_price),
            'bid': None if self.bid is None else str(self.bid),
            'ask': None if self.ask is None else str(self.ask),
            'volume': self.volume,
            'timestamp': format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class Trade:
    """Executed trade from a ``trades.{symbol}`` channel."""
    symbol: str
    price: Decimal
    quantity: int
    timestamp: datetime
    trade_id: Optional[str] = None

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "Trade":
        trade_id = data.get('trade_id', data.get('id'))
        return cls(
            symbol=str(_require(data, 'symbol')),
            price=parse_decimal(_require(data, 'price'), 'price'),
            quantity=_parse_volume(_require(data, 'quantity', 'qty', 'volume')),
            timestamp=parse_timestamp(_require(data, 'timestamp', 'time')),
            trade_id=None if trade_id is None else str(trade_id),
        )


@dataclass(frozen=True)
class OHLCVBar:
    """OHLCV bar keyed by (symbol, interval, timestamp); prices at 2 places."""
    symbol: str
    interval: Interval
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int
    timestamp: datetime

    def __post_init__(self):
        for name in ('open', 'high', 'low', 'close'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                value = parse_decimal(value, name)
            object.__setattr__(self, name, value.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP))
        if not isinstance(self.volume, int) or self.volume < 0:
            raise DataIntegrityError(f"Volume must be a non-negative integer, got {self.volume!r}")

    @property
    def key(self):
        return (self.symbol, self.interval, self.timestamp)

    @classmethod
    def from_wire(cls, data: Mapping[str, Any], symbol: str, interval: Interval) -> "OHLCVBar":
        return cls(
            symbol=str(data.get('symbol') or symbol),
            interval=interval,
            open=parse_decimal(_require(data, 'open', 'o'), 'open'),
            high=parse_decimal(_require(data, 'high', 'h'), 'high'),
            low=parse_decimal(_require(data, 'low', 'l'), 'low'),
            close=parse_decimal(_require(data, 'close', 'c'), 'close'),
            volume=_parse_volume(data.get('volume', data.get('v'))),
            timestamp=parse_timestamp(_require(data, 'timestamp', 'date', 'time')),
        )


class SubscriptionState(str, Enum):
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


@dataclass
class Subscription:
    """A stream channel and the last sequence number seen on it."""
    channel: str
    desired_state: SubscriptionState = SubscriptionState.SUBSCRIBED
    last_seq: Optional[int] = None

    @property
    def active(self) -> bool:
        return self.desired_state is SubscriptionState.SUBSCRIBED


@dataclass
class QuoteBook:
    """Latest quote per symbol; rejects arrivals that are not newer."""
    quotes: Dict[str, Quote] = field(default_factory=dict)
    dropped: int = 0

    def update(self, quote: Quote) -> bool:
        current = self.quotes.get(quote.symbol)
        if current is not None and quote.timestamp <= current.timestamp:
            self.dropped += 1
            return False
        self.quotes[quote.symbol] = quote
        return True

    def get(self, symbol: str) -> Optional[Quote]:
        return self.quotes.get(symbol)
