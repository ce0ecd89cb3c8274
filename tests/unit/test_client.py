"""Unit tests for the high-level CSE client."""

from decimal import Decimal

import pytest

from cse_client import CSEClient
from cse_client.client import InstrumentCache
from cse_client.clients.rest import AuthMode
from cse_client.errors import DataIntegrityError, InvalidArgument
from cse_client.models import Instrument

from fakes import FakeConnector, FakeResponse, FakeSession, FakeWebSocket, daily_bar

pytestmark = pytest.mark.unit

SYMBOL = "CSE:JKH.N0000"
INSTRUMENT = {'symbol': SYMBOL, 'name': 'John Keells Holdings PLC', 'sector': 'Capital Goods', 'lot_size': 1}


@pytest.fixture
def make_client(settings, recording_sleep):
    def _make(responses=None, handler=None, sockets=None, **kwargs):
        session = FakeSession(responses=responses, handler=handler)
        connect = FakeConnector(sockets or [])
        return CSEClient(settings, session=session, connect=connect, sleep=recording_sleep, **kwargs)
    return _make


class TestRestEndpoints:
    """REST operations exposed by CSEClient."""

    def test_auth_mode_follows_credentials(self, settings, make_client):
        assert make_client().auth is AuthMode.BEARER

        settings.api.token = None
        assert make_client().auth is AuthMode.API_KEY

        settings.api.api_key = None
        assert make_client().auth is AuthMode.NONE
        assert make_client(auth='bearer').auth is AuthMode.BEARER

    @pytest.mark.asyncio
    async def test_get_quote(self, make_client, sample_quote_payload):
        body = {k: v for k, v in sample_quote_payload.items() if k != 'symbol'}
        client = make_client([FakeResponse(200, {'data': body})])

        quote = await client.get_quote(SYMBOL)

        assert quote.symbol == SYMBOL
        assert quote.last_price == Decimal('194.50')
        call = client.gateway.session.calls[0]
        assert call['url'].endswith(f"/quotes/{SYMBOL}")
        assert call['headers']['Authorization'] == 'Bearer test-token'

    @pytest.mark.asyncio
    async def test_market_summary_and_corporate_actions(self, make_client):
        client = make_client([
            FakeResponse(200, {'data': {'aspi': '12345.67', 'turnover': '1500000000'}}),
            FakeResponse(200, {'actions': [{'type': 'dividend', 'amount': '1.50'}]}),
            FakeResponse(200, {'total': 0}),
        ])

        summary = await client.get_market_summary()
        actions = await client.get_corporate_actions(SYMBOL)

        assert summary['aspi'] == '12345.67'
        assert actions == [{'type': 'dividend', 'amount': '1.50'}]
        with pytest.raises(DataIntegrityError):
            await client.get_corporate_actions(SYMBOL)

    @pytest.mark.asyncio
    async def test_get_history_delegates_to_fetcher(self, make_client):
        client = make_client([FakeResponse(200, [daily_bar("2025-07-01"), daily_bar("2025-07-02")])])

        bars = await client.get_history(SYMBOL, "2025-07-01", "2025-07-02")

        assert [b.timestamp.day for b in bars] == [1, 2]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("symbol", ["", "../admin", None])
    async def test_invalid_symbols_rejected(self, make_client, symbol):
        client = make_client([])

        with pytest.raises(InvalidArgument):
            await client.get_quote(symbol)
        assert client.gateway.session.calls == []


class TestInstrumentCache:
    """Instrument lookups and cache expiry."""

    @pytest.mark.asyncio
    async def test_get_instrument_is_cached(self, make_client):
        client = make_client([FakeResponse(200, INSTRUMENT)])

        first = await client.get_instrument(SYMBOL)
        second = await client.get_instrument(SYMBOL)

        assert first is second
        assert first.sector == 'Capital Goods'
        assert len(client.gateway.session.calls) == 1

    @pytest.mark.asyncio
    async def test_search_instruments_walks_pages_and_fills_cache(self, make_client):
        records = [dict(INSTRUMENT, symbol=f"CSE:S{i:02d}.N0000") for i in range(5)]
        client = make_client([FakeResponse(200, records[:3]), FakeResponse(200, records[3:])])

        found = [i async for i in client.search_instruments(search="holdings", limit=3)]

        assert [i.symbol for i in found] == [r['symbol'] for r in records]
        assert len(client.instruments) == 5
        assert client.gateway.session.calls[0]['params'] == {'search': 'holdings', 'limit': '3', 'page': '1'}

    def test_instrument_cache_expires(self):
        now = [0.0]
        cache = InstrumentCache(ttl_seconds=60, clock=lambda: now[0])
        instrument = Instrument(symbol=SYMBOL, name='John Keells')

        cache.put(instrument)
        now[0] = 59.0
        assert cache.get(SYMBOL) is instrument
        now[0] = 60.0
        assert cache.get(SYMBOL) is None
        assert len(cache) == 0


class TestStreaming:

    @pytest.mark.asyncio
    async def test_stream_quotes(self, make_client, sample_quote_payload):
        ws = FakeWebSocket([{'channel': f"quotes.{SYMBOL}", 'seq': 1, 'data': sample_quote_payload}])
        client = make_client(sockets=[ws])
        await client.subscribe_quotes(SYMBOL)

        async with client:
            agen = client.stream()
            quote = await agen.__anext__()
            await agen.aclose()

        assert quote.symbol == SYMBOL
        assert ws.sent[0]['channels'] == [f"quotes.{SYMBOL}"]
        assert client.stream_manager.subscriptions == {}
        assert client.get_stats()['stream']['messages_received'] == 1
