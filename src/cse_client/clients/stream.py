"""CSE WebSocket stream manager for real-time quotes and trades."""

import asyncio
import json
import logging
import random
import re
import time
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

import websockets

from ..config.settings import APIConfig, RetryConfig, StreamConfig
from ..errors import (
    CSEClientError,
    ConnectionLost,
    DataIntegrityError,
    GapDetected,
    InvalidArgument,
    TRANSIENT_ERRORS,
    classify_error_frame,
    classify_exception,
)
from ..models import Quote, QuoteBook, Subscription, SubscriptionState, Trade
from ..utils.retry import BackoffPolicy, SleepFunc

logger = logging.getLogger(__name__)

StreamEvent = Union[Quote, Trade, CSEClientError]
ConnectFunc = Callable[[], Awaitable[Any]]

CHANNEL_KINDS = ('quotes', 'trades')
CHANNEL_PATTERN = re.compile(r'^(quotes|trades)[.:](.+)$', re.IGNORECASE)
HEARTBEAT_TYPES = {'heartbeat', 'ping', 'pong'}
ACK_TYPES = {'ack', 'subscribed', 'unsubscribed'}


class StreamState(str, Enum):
    """Connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"


def normalize_channel(channel: str) -> str:
    """Return the canonical ``kind.SYMBOL`` form; ``quotes:SYM`` is accepted."""
    if not isinstance(channel, str):
        raise InvalidArgument(f"Channel must be a string, got {channel!r}")
    # Symbols themselves contain "." and ":" (CSE:JKH.N0000)
    match = CHANNEL_PATTERN.match(channel)
    if match is None:
        raise InvalidArgument(
            f"Channel {channel!r} must be one of {', '.join(k + '.SYMBOL' for k in CHANNEL_KINDS)}"
        )
    kind, symbol = match.groups()
    return f"{kind.lower()}.{symbol}"


def channel_for(kind: str, symbol: str) -> str:
    return normalize_channel(f"{kind}.{symbol}")


class _TransientFrame(Exception):
    """Internal signal: a transient error frame that requires a reconnect."""

    def __init__(self, error: CSEClientError):
        super().__init__(str(error))
        self.error = error


class RealtimeStreamManager:
    """
    Owns one WebSocket connection and the subscription set replayed on it.

    ``stream()`` yields :class:`Quote` and :class:`Trade` objects plus in-band
    fault events (:class:`GapDetected` and :class:`DataIntegrityError`) that do
    not end the stream. Silence longer than the heartbeat timeout, transport
    errors and transient error frames trigger a reconnect with the shared
    backoff policy; client-class error frames are raised.
    """

    def __init__(
        self,
        config: APIConfig,
        stream_config: StreamConfig,
        retry_config: RetryConfig,
        connect: Optional[ConnectFunc] = None,
        sleep: SleepFunc = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        self.config = config
        self.stream_config = stream_config
        self.policy = BackoffPolicy.from_config(retry_config, rng=rng)
        self._connect_factory = connect or self._default_connect
        self._sleep = sleep

        self.websocket: Optional[Any] = None
        self.state = StreamState.DISCONNECTED
        self.subscriptions: Dict[str, Subscription] = {}
        self.quote_book = QuoteBook()
        self._rebaseline: Set[str] = set()
        self._reconnect_lock = asyncio.Lock()
        self._closed = False

        self.stats = {
            'messages_received': 0,
            'events_delivered': 0,
            'heartbeats': 0,
            'decode_errors': 0,
            'gaps_detected': 0,
            'duplicates_dropped': 0,
            'stale_quotes_dropped': 0,
            'heartbeat_timeouts': 0,
            'connection_count': 0,
            'reconnects': 0,
            'last_message_time': None
        }

    # -- lifecycle ---------------------------------------------------------

    def _set_state(self, state: StreamState):
        if state is not self.state:
            logger.debug(f"Stream state {self.state.value} -> {state.value}")
            self.state = state

    async def _default_connect(self):
        headers = {'User-Agent': 'CSEClient/1.0'}
        if self.config.token:
            headers['Authorization'] = f"Bearer {self.config.token}"
        elif self.config.api_key:
            headers['X-API-KEY'] = self.config.api_key

        return await websockets.connect(
            self.config.ws_url,
            additional_headers=headers,
            ping_interval=self.stream_config.ping_interval_seconds,
            ping_timeout=self.stream_config.ping_timeout_seconds,
            close_timeout=self.stream_config.close_timeout_seconds,
            max_size=2**20
        )

    async def connect(self):
        """Open the transport and subscribe every active channel."""
        if self.websocket is not None:
            return
        self._closed = False
        try:
            await self._open()
        except CSEClientError:
            self._set_state(StreamState.DISCONNECTED)
            await self._drop_transport()
            raise

    async def _open(self):
        self._set_state(StreamState.CONNECTING)
        logger.info(f"Connecting to CSE stream: {self.config.ws_url}")
        try:
            self.websocket = await self._connect_factory()
        except Exception as e:
            self.websocket = None
            raise classify_exception(e) from e

        self.stats['connection_count'] += 1
        self._set_state(StreamState.SUBSCRIBING)
        # Sequence numbering may restart on a fresh connection
        self._rebaseline = set(self.active_channels)
        await self._send_action('subscribe', self.active_channels)

    async def close(self):
        """Shut the stream down and discard all subscriptions."""
        self._closed = True
        self.subscriptions.clear()
        self._rebaseline.clear()
        self._set_state(StreamState.DISCONNECTED)
        await self._drop_transport()
        logger.info("Disconnected from CSE stream")

    async def _drop_transport(self):
        websocket, self.websocket = self.websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing websocket: {e!r}")

    # -- subscriptions -----------------------------------------------------

    @property
    def active_channels(self) -> List[str]:
        return sorted(c for c, s in self.subscriptions.items() if s.active)

    async def subscribe(self, *channels: str) -> List[Subscription]:
        """Add channels; sent immediately when connected, else on connect."""
        added = []
        for channel in (normalize_channel(c) for c in channels):
            subscription = self.subscriptions.get(channel)
            if subscription is None:
                subscription = Subscription(channel=channel)
                self.subscriptions[channel] = subscription
            subscription.desired_state = SubscriptionState.SUBSCRIBED
            added.append(subscription)

        if self.websocket is not None and added:
            await self._send_action('subscribe', [s.channel for s in added])
        return added

    async def unsubscribe(self, *channels: str):
        removed = []
        for channel in (normalize_channel(c) for c in channels):
            if self.subscriptions.pop(channel, None) is not None:
                self._rebaseline.discard(channel)
                removed.append(channel)

        if self.websocket is not None and removed:
            await self._send_action('unsubscribe', removed)

    async def _send_action(self, action: str, channels: Iterable[str]):
        channels = list(channels)
        if not channels:
            return
        message: Dict[str, Any] = {'action': action, 'channels': channels}
        if self.config.token:
            message['token'] = self.config.token
        logger.info(f"Sending {action} for {len(channels)} channel(s)")
        try:
            await self.websocket.send(json.dumps(message))
        except Exception as e:
            raise classify_exception(e) from e

    # -- streaming ---------------------------------------------------------

    async def stream(self) -> AsyncIterator[StreamEvent]:
        """Yield events until ``close()``; reconnects transparently."""
        if self.websocket is None:
            await self.connect()

        try:
            while not self._closed:
                try:
                    raw_message = await asyncio.wait_for(
                        self.websocket.recv(),
                        timeout=self.stream_config.heartbeat_timeout_seconds
                    )
                except asyncio.TimeoutError:
                    self.stats['heartbeat_timeouts'] += 1
                    logger.warning(
                        f"No message for {self.stream_config.heartbeat_timeout_seconds}s, reconnecting"
                    )
                    await self._reconnect()
                    continue
                except Exception as e:
                    if self._closed:
                        break
                    logger.warning(f"Stream transport error: {e!r}")
                    await self._reconnect()
                    continue

                try:
                    events = self._handle_message(raw_message)
                except _TransientFrame as frame:
                    logger.warning(f"Transient error frame from server: {frame.error!r}")
                    await self._reconnect()
                    continue

                for event in events:
                    self.stats['events_delivered'] += 1
                    yield event
        finally:
            if not self._closed:
                # Consumer cancelled or stopped iterating
                self._set_state(StreamState.DISCONNECTED)
                await self._drop_transport()

    async def _reconnect(self):
        async with self._reconnect_lock:
            if self._closed:
                return
            self._set_state(StreamState.RECONNECTING)
            await self._drop_transport()

            last_error: Optional[CSEClientError] = None
            for retry in range(self.policy.max_attempts):
                delay = self.policy.compute_delay(retry)
                logger.info(
                    f"Reconnection attempt {retry + 1}/{self.policy.max_attempts} in {delay:.2f}s"
                )
                await self._sleep(delay)
                if self._closed:
                    return
                try:
                    await self._open()
                except CSEClientError as e:
                    last_error = e
                    await self._drop_transport()
                    self._set_state(StreamState.RECONNECTING)
                    logger.warning(f"Reconnection attempt {retry + 1} failed: {e!r}")
                    continue
                self.stats['reconnects'] += 1
                logger.info(f"Reconnected, replayed {len(self.active_channels)} subscription(s)")
                return

            self._set_state(StreamState.DISCONNECTED)
            logger.error(f"Reconnect failed after {self.policy.max_attempts} attempts")
            raise ConnectionLost(
                f"Stream reconnect failed after {self.policy.max_attempts} attempts",
                details={'last_error': repr(last_error)}
            )

    def _handle_message(self, raw_message) -> List[StreamEvent]:
        self.stats['messages_received'] += 1
        self.stats['last_message_time'] = time.time()

        try:
            message = json.loads(raw_message)
            if not isinstance(message, dict):
                raise ValueError(f"expected an object, got {type(message).__name__}")
        except (ValueError, TypeError) as e:
            self.stats['decode_errors'] += 1
            return [DataIntegrityError(f"Undecodable stream message: {e}",
                                       details={'raw': str(raw_message)[:200]})]

        message_type = str(message.get('type') or message.get('event') or '').lower()

        if message_type in HEARTBEAT_TYPES:
            self.stats['heartbeats'] += 1
            return []

        if message_type in ACK_TYPES:
            if self.state is StreamState.SUBSCRIBING:
                self._set_state(StreamState.STREAMING)
            return []

        if message_type == 'error':
            error = classify_error_frame(message)
            if isinstance(error, TRANSIENT_ERRORS):
                raise _TransientFrame(error)
            raise error

        if self.state is StreamState.SUBSCRIBING:
            self._set_state(StreamState.STREAMING)
        return self._handle_data(message)

    def _handle_data(self, message: Dict[str, Any]) -> List[StreamEvent]:
        try:
            channel = normalize_channel(message.get('channel'))
        except InvalidArgument as e:
            self.stats['decode_errors'] += 1
            return [DataIntegrityError(f"Bad channel in stream message: {e}")]

        subscription = self.subscriptions.get(channel)
        if subscription is None or not subscription.active:
            logger.debug(f"Ignoring message for unsubscribed channel {channel}")
            return []

        events: List[StreamEvent] = []
        seq = message.get('seq')
        if seq is not None:
            try:
                seq = int(seq)
            except (TypeError, ValueError):
                self.stats['decode_errors'] += 1
                return [DataIntegrityError(f"Invalid sequence number {seq!r} on {channel}")]

            last_seq = subscription.last_seq
            rebaseline = channel in self._rebaseline
            self._rebaseline.discard(channel)

            if last_seq is not None:
                if seq <= last_seq:
                    if not rebaseline:
                        self.stats['duplicates_dropped'] += 1
                        return []
                    logger.info(f"Sequence on {channel} restarted at {seq} after resubscribe")
                elif seq > last_seq + 1:
                    self.stats['gaps_detected'] += 1
                    gap = GapDetected(channel, last_seq + 1, seq)
                    logger.warning(str(gap))
                    events.append(gap)
            subscription.last_seq = seq

        kind, symbol = channel.split('.', 1)
        payload = message.get('data', message)
        if not isinstance(payload, dict):
            self.stats['decode_errors'] += 1
            events.append(DataIntegrityError(f"Payload on {channel} is not an object"))
            return events
        payload = {'symbol': symbol, **payload}

        try:
            if kind == 'quotes':
                quote = Quote.from_wire(payload)
                if self.quote_book.update(quote):
                    events.append(quote)
                else:
                    self.stats['stale_quotes_dropped'] += 1
                    logger.debug(f"Dropped out-of-order quote for {quote.symbol} at {quote.timestamp}")
            else:
                events.append(Trade.from_wire(payload))
        except DataIntegrityError as e:
            self.stats['decode_errors'] += 1
            events.append(e)

        return events

    # -- observability -----------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Get connection and processing statistics."""
        last_message_age = None
        if self.stats['last_message_time']:
            last_message_age = time.time() - self.stats['last_message_time']

        return {
            **self.stats,
            'state': self.state.value,
            'subscriptions': self.active_channels,
            'last_message_age_seconds': last_message_age,
            'is_connected': self.websocket is not None
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on the WebSocket connection."""
        stats = self.get_stats()
        issues = []

        if not stats['is_connected']:
            issues.append('WebSocket not connected')

        age = stats['last_message_age_seconds']
        if age is not None and age > self.stream_config.heartbeat_timeout_seconds:
            issues.append(f"No messages for {age:.1f}s")

        if stats['messages_received'] > 0:
            error_rate = stats['decode_errors'] / stats['messages_received']
            if error_rate > 0.05:
                issues.append(f"High error rate: {error_rate:.2%}")

        return {
            'status': 'healthy' if not issues else 'unhealthy',
            'issues': issues,
            'stats': stats
        }
