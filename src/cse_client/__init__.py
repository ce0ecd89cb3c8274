"""
CSE Market Client - resilient async client for the Colombo Stock Exchange API.

This package provides REST access (instruments, quotes, historical bars,
market summary, corporate actions) and a reconnecting WebSocket stream for
real-time quotes and trades.
"""

from .client import CSEClient
from .config.settings import CSEClientSettings, load_settings
from .errors import (
    CSEClientError,
    ClientError,
    ConnectionLost,
    DataIntegrityError,
    GapDetected,
    InvalidArgument,
    RateLimited,
    RequestTooLarge,
    ServerError,
    Timeout,
)
from .models import ErrorEnvelope, Instrument, OHLCVBar, Quote, Trade

__version__ = "1.0.0"
__author__ = "CSE Client Team"

__all__ = [
    "CSEClient",
    "CSEClientSettings",
    "load_settings",
    "CSEClientError",
    "ClientError",
    "ConnectionLost",
    "DataIntegrityError",
    "GapDetected",
    "InvalidArgument",
    "RateLimited",
    "RequestTooLarge",
    "ServerError",
    "Timeout",
    "ErrorEnvelope",
    "Instrument",
    "OHLCVBar",
    "Quote",
    "Trade",
]
