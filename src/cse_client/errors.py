"""Error taxonomy and classification for REST and stream failures.

Every failure that leaves the client is one of the classes below and carries
exactly one :class:`ErrorEnvelope`. ``classify_status`` and
``classify_exception`` are total: any input maps to some class.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple, Type

import aiohttp
from websockets.exceptions import WebSocketException


@dataclass(frozen=True)
class ErrorEnvelope:
    """Normalized error payload: ``{"error": {"code", "message", "details"}}``."""
    code: int
    message: str
    details: Any = None

    def to_wire(self) -> dict:
        return {'error': {'code': self.code, 'message': self.message, 'details': self.details}}


class CSEClientError(Exception):
    """Base class for all classified client errors."""

    default_code = 0

    def __init__(self, message: str = "", *, code: Optional[int] = None,
                 details: Any = None, envelope: Optional[ErrorEnvelope] = None):
        if envelope is None:
            envelope = ErrorEnvelope(
                code=self.default_code if code is None else code,
                message=message or self.__class__.__name__,
                details=details,
            )
        self.envelope = envelope
        super().__init__(envelope.message)

    @property
    def code(self) -> int:
        return self.envelope.code

    def __repr__(self):
        return f"{self.__class__.__name__}(code={self.envelope.code}, message={self.envelope.message!r})"


class InvalidArgument(CSEClientError):
    """Caller supplied an invalid argument; never retried."""
    default_code = 400


class ClientError(CSEClientError):
    """4xx response other than 429; never retried."""
    default_code = 400


class RequestTooLarge(ClientError):
    """Provider rejected the request window as too large."""
    default_code = 413


class RateLimited(CSEClientError):
    """HTTP 429 after retries were exhausted."""
    default_code = 429

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(CSEClientError):
    """HTTP 5xx after retries were exhausted."""
    default_code = 500


class Timeout(CSEClientError):
    """Request or connection timed out on the client side."""
    default_code = 408


class DataIntegrityError(CSEClientError):
    """Response could not be decoded or is internally inconsistent."""
    default_code = 422


class GapDetected(CSEClientError):
    """A stream channel skipped one or more sequence numbers.

    Delivered as an event on the stream, not raised; the stream keeps going.
    """
    default_code = 0

    def __init__(self, channel: str, expected: int, received: int):
        super().__init__(
            f"Sequence gap on {channel}: expected {expected}, received {received}",
            details={'channel': channel, 'expected': expected, 'received': received},
        )
        self.channel = channel
        self.expected = expected
        self.received = received

    @property
    def missing(self) -> int:
        return self.received - self.expected


class ConnectionLost(CSEClientError):
    """Transport failed (connection refused, reset, closed)."""
    default_code = 503


# Classes retried locally under the backoff policy before surfacing
TRANSIENT_ERRORS: Tuple[Type[CSEClientError], ...] = (RateLimited, ServerError, Timeout, ConnectionLost)

_TOO_LARGE_HINTS = ('too large', 'too long', 'range exceeds', 'window exceeds')


def parse_error_body(body: Any, status: int, reason: str = "") -> ErrorEnvelope:
    """Extract an envelope from an error body, falling back to the status line."""
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except (ValueError, TypeError):
            text = body.decode(errors='replace') if isinstance(body, bytes) else body
            return ErrorEnvelope(code=status, message=reason or f"HTTP {status}",
                                 details=text.strip() or None)

    if isinstance(body, Mapping):
        error = body.get('error')
        if isinstance(error, Mapping):
            code = error.get('code', status)
            try:
                code = int(code)
            except (TypeError, ValueError):
                code = status
            return ErrorEnvelope(
                code=code,
                message=str(error.get('message') or reason or f"HTTP {status}"),
                details=error.get('details'),
            )
        if isinstance(error, str):
            return ErrorEnvelope(code=status, message=error, details=body.get('details'))

    return ErrorEnvelope(code=status, message=reason or f"HTTP {status}")


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    value = headers.get('Retry-After')
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        # HTTP-date form is not used by this API
        return None


def _is_too_large(status: int, envelope: ErrorEnvelope) -> bool:
    if status == 413 or envelope.code == 413:
        return True
    message = envelope.message.lower()
    return any(hint in message for hint in _TOO_LARGE_HINTS)


def classify_status(status: int, body: Any = None,
                    headers: Optional[Mapping[str, str]] = None,
                    reason: str = "") -> CSEClientError:
    """Map a non-2xx HTTP status (and its body) to a classified error."""
    envelope = parse_error_body(body, status, reason)

    if status == 429:
        return RateLimited(envelope=envelope, retry_after=parse_retry_after(headers))
    if status >= 500:
        return ServerError(envelope=envelope)
    if 400 <= status < 500:
        if _is_too_large(status, envelope):
            return RequestTooLarge(envelope=envelope)
        return ClientError(envelope=envelope)
    # 1xx/3xx that the gateway did not handle
    return DataIntegrityError(
        f"Unexpected HTTP status {status}", code=status, details=envelope.details
    )


def classify_error_frame(frame: Mapping[str, Any]) -> CSEClientError:
    """Map a stream error frame ``{"type": "error", "error": {...}}`` to an error."""
    envelope = parse_error_body(frame, 0, "Stream error")
    code = envelope.code
    if code == 429:
        return RateLimited(envelope=envelope)
    if 400 <= code < 500:
        return ClientError(envelope=envelope)
    if code >= 500:
        return ServerError(envelope=envelope)
    return ConnectionLost(envelope=envelope)


def classify_exception(exc: BaseException) -> CSEClientError:
    """Map a raw transport or decode exception to a classified error."""
    if isinstance(exc, CSEClientError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
        return Timeout(f"Timed out: {exc}" if str(exc) else "Timed out")
    if isinstance(exc, aiohttp.ContentTypeError):
        return DataIntegrityError(f"Unexpected content type: {exc.message}")
    if isinstance(exc, aiohttp.ClientResponseError):
        return classify_status(exc.status, None, exc.headers, exc.message)
    # InvalidURL is both a ClientError and a ValueError
    if isinstance(exc, (aiohttp.ClientError, WebSocketException, OSError)):
        return ConnectionLost(f"Connection failed: {exc}")
    if isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError, ValueError, KeyError, TypeError)):
        return DataIntegrityError(f"Malformed payload: {exc}")
    return ConnectionLost(f"Unclassified failure: {exc!r}")
