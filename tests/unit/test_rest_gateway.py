"""Unit tests for the REST request gateway."""

import asyncio

import aiohttp
import pytest

from cse_client.clients.rest import AuthMode
from cse_client.errors import (
    ClientError,
    ConnectionLost,
    DataIntegrityError,
    InvalidArgument,
    RateLimited,
    RequestTooLarge,
    ServerError,
    Timeout,
)

from fakes import FakeResponse

pytestmark = pytest.mark.unit

OK_BODY = {'symbol': 'CSE:JKH.N0000', 'last_price': '194.50'}


def error_response(status, code=None, message="boom", headers=None):
    return FakeResponse(
        status,
        {'error': {'code': code or status, 'message': message, 'details': None}},
        headers=headers
    )


class TestSend:
    """Basic request/response handling."""

    @pytest.mark.asyncio
    async def test_successful_get_returns_decoded_body(self, make_gateway):
        gateway = make_gateway([FakeResponse(200, OK_BODY)])

        body = await gateway.send('GET', '/quotes/CSE:JKH.N0000')

        assert body == OK_BODY
        call = gateway.session.calls[0]
        assert call['method'] == 'GET'
        assert call['url'] == 'https://api.cse.lk/v1/quotes/CSE:JKH.N0000'

    @pytest.mark.asyncio
    async def test_no_content_returns_none(self, make_gateway):
        gateway = make_gateway([FakeResponse(204)])
        assert await gateway.send('DELETE', '/watchlist/1') is None

    @pytest.mark.asyncio
    async def test_malformed_json_raises_data_integrity_error(self, make_gateway):
        gateway = make_gateway([FakeResponse(200, "{not json")])

        with pytest.raises(DataIntegrityError):
            await gateway.send('GET', '/quotes/X')
        assert len(gateway.session.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["https://evil.example.com/x", "//evil.example.com/x", ""])
    async def test_absolute_paths_are_rejected(self, make_gateway, path):
        gateway = make_gateway([])

        with pytest.raises(InvalidArgument):
            await gateway.send('GET', path)
        assert gateway.session.calls == []

    @pytest.mark.asyncio
    async def test_params_are_normalized(self, make_gateway):
        gateway = make_gateway([FakeResponse(200, [])])

        await gateway.send('GET', '/instruments', {'search': 'bank', 'sector': None, 'active': True, 'limit': 10})

        assert gateway.session.calls[0]['params'] == {'search': 'bank', 'active': 'true', 'limit': '10'}

    @pytest.mark.asyncio
    async def test_non_scalar_params_are_rejected(self, make_gateway):
        gateway = make_gateway([])

        with pytest.raises(InvalidArgument):
            await gateway.send('GET', '/instruments', {'symbols': ['A', 'B']})


class TestRetries:
    """Backoff behaviour for transient failures."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [0, 1, 2, 3])
    async def test_rate_limited_requests_succeed_within_retry_cap(self, make_gateway, recording_sleep, failures):
        """Up to max_attempts - 1 injected 429s are absorbed by retries."""
        responses = [error_response(429) for _ in range(failures)] + [FakeResponse(200, OK_BODY)]
        gateway = make_gateway(responses)

        assert await gateway.send('GET', '/quotes/X') == OK_BODY
        assert len(gateway.session.calls) == failures + 1
        assert len(recording_sleep.delays) == failures
        assert gateway.get_stats()['retries'] == failures

    @pytest.mark.asyncio
    async def test_total_backoff_grows_with_more_retries(self, make_gateway, recording_sleep):
        totals = []
        for failures in range(4):
            recording_sleep.delays.clear()
            responses = [error_response(429) for _ in range(failures)] + [FakeResponse(200, OK_BODY)]
            await make_gateway(responses).send('GET', '/quotes/X')
            totals.append(recording_sleep.total)

        assert totals == sorted(totals)
        assert totals[0] == 0

    @pytest.mark.asyncio
    async def test_backoff_delays_double_and_respect_cap(self, make_gateway, recording_sleep, retry_config):
        responses = [error_response(503) for _ in range(3)] + [FakeResponse(200, OK_BODY)]
        await make_gateway(responses).send('GET', '/market/summary')

        base = retry_config.initial_backoff_seconds
        for retry, delay in enumerate(recording_sleep.delays):
            expected = min(base * 2 ** retry, retry_config.max_backoff_seconds)
            assert expected <= delay <= min(expected * 1.25, retry_config.max_backoff_seconds)

    @pytest.mark.asyncio
    async def test_retry_after_raises_delay_floor(self, make_gateway, recording_sleep):
        responses = [error_response(429, headers={'Retry-After': '0.8'}), FakeResponse(200, OK_BODY)]
        await make_gateway(responses).send('GET', '/quotes/X')

        assert recording_sleep.delays[0] >= 0.8

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_raises_rate_limited(self, make_gateway, retry_config):
        gateway = make_gateway([error_response(429, headers={'Retry-After': '5'})
                                for _ in range(retry_config.max_attempts)])

        with pytest.raises(RateLimited) as exc_info:
            await gateway.send('GET', '/quotes/X')

        assert exc_info.value.code == 429
        assert exc_info.value.retry_after == 5.0
        assert len(gateway.session.calls) == retry_config.max_attempts

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    async def test_server_error_exhaustion_raises_server_error(self, make_gateway, retry_config, status):
        gateway = make_gateway([error_response(status) for _ in range(retry_config.max_attempts)])

        with pytest.raises(ServerError) as exc_info:
            await gateway.send('GET', '/market/summary')

        assert exc_info.value.envelope.code == status
        assert exc_info.value.envelope.message == "boom"
        assert len(gateway.session.calls) == retry_config.max_attempts

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 408, 409, 422])
    async def test_client_errors_are_never_retried(self, make_gateway, recording_sleep, status):
        gateway = make_gateway(handler=lambda method, url, params: error_response(status, message="nope"))

        with pytest.raises(ClientError) as exc_info:
            await gateway.send('GET', '/instruments/UNKNOWN')

        assert exc_info.value.envelope.code == status
        assert exc_info.value.envelope.message == "nope"
        assert len(gateway.session.calls) == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_request_too_large_is_a_client_error(self, make_gateway):
        gateway = make_gateway([error_response(400, code=413, message="Date range too large")])

        with pytest.raises(RequestTooLarge):
            await gateway.send('GET', '/historical/X', {'start': '2020-01-01', 'end': '2025-01-01'})
        assert len(gateway.session.calls) == 1

    @pytest.mark.asyncio
    async def test_non_json_error_body_still_classified(self, make_gateway):
        gateway = make_gateway([FakeResponse(404, "<html>Not Found</html>", reason="Not Found")])

        with pytest.raises(ClientError) as exc_info:
            await gateway.send('GET', '/instruments/X')

        assert exc_info.value.envelope.message == "Not Found"
        assert exc_info.value.envelope.details == "<html>Not Found</html>"

    @pytest.mark.asyncio
    async def test_timeouts_are_retried_then_classified(self, make_gateway, retry_config):
        gateway = make_gateway([asyncio.TimeoutError() for _ in range(retry_config.max_attempts)])

        with pytest.raises(Timeout):
            await gateway.send('GET', '/quotes/X')
        assert len(gateway.session.calls) == retry_config.max_attempts

    @pytest.mark.asyncio
    async def test_connection_errors_recover(self, make_gateway):
        gateway = make_gateway([aiohttp.ClientConnectionError("reset"), FakeResponse(200, OK_BODY)])

        assert await gateway.send('GET', '/quotes/X') == OK_BODY

    @pytest.mark.asyncio
    async def test_connection_errors_exhausted_raise_connection_lost(self, make_gateway, retry_config):
        gateway = make_gateway([aiohttp.ClientConnectionError("refused")
                                for _ in range(retry_config.max_attempts)])

        with pytest.raises(ConnectionLost):
            await gateway.send('GET', '/quotes/X')

    @pytest.mark.asyncio
    async def test_cancellation_stops_retry_chain(self, make_gateway):
        gateway = make_gateway(handler=lambda method, url, params: error_response(503))

        async def blocking_sleep(delay):
            await asyncio.sleep(3600)

        gateway._sleep = blocking_sleep
        task = asyncio.create_task(gateway.send('GET', '/quotes/X'))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(gateway.session.calls) == 1


class TestConditionalGet:
    """ETag / Last-Modified revalidation."""

    @pytest.mark.asyncio
    async def test_conditional_get_serves_cached_body_on_304(self, make_gateway):
        gateway = make_gateway([
            FakeResponse(200, OK_BODY, headers={'ETag': '"v1"', 'Last-Modified': 'Tue, 15 Jul 2025 04:30:00 GMT'}),
            FakeResponse(304),
        ])

        first = await gateway.send('GET', '/instruments/CSE:JKH.N0000')
        second = await gateway.send('GET', '/instruments/CSE:JKH.N0000')

        assert first == second == OK_BODY
        revalidation = gateway.session.calls[1]['headers']
        assert revalidation['If-None-Match'] == '"v1"'
        assert revalidation['If-Modified-Since'] == 'Tue, 15 Jul 2025 04:30:00 GMT'
        assert gateway.get_stats()['cache_hits'] == 1

    @pytest.mark.asyncio
    async def test_conditional_get_is_keyed_by_params(self, make_gateway):
        gateway = make_gateway([
            FakeResponse(200, [1], headers={'ETag': '"a"'}),
            FakeResponse(200, [2], headers={'ETag': '"b"'}),
        ])

        await gateway.send('GET', '/instruments', {'page': 1})
        await gateway.send('GET', '/instruments', {'page': 2})

        assert 'If-None-Match' not in gateway.session.calls[1]['headers']


class TestAuthAndConcurrency:

    @pytest.mark.asyncio
    async def test_auth_headers(self, make_gateway):
        gateway = make_gateway([FakeResponse(200, {}), FakeResponse(200, {}), FakeResponse(200, {})])

        await gateway.send('GET', '/quotes/X', auth=AuthMode.BEARER)
        await gateway.send('GET', '/quotes/X', auth='api_key')
        await gateway.send('GET', '/quotes/X')

        bearer, api_key, anonymous = (c['headers'] for c in gateway.session.calls)
        assert bearer['Authorization'] == 'Bearer test-token'
        assert api_key['X-API-KEY'] == 'test-key'
        assert 'Authorization' not in anonymous and 'X-API-KEY' not in anonymous

    @pytest.mark.asyncio
    async def test_missing_credential_is_invalid_argument(self, make_gateway):
        gateway = make_gateway([], token=None)

        with pytest.raises(InvalidArgument):
            await gateway.send('GET', '/quotes/X', auth=AuthMode.BEARER)

    @pytest.mark.asyncio
    async def test_concurrency_cap_limits_in_flight_requests(self, make_gateway):
        in_flight = 0
        peak = 0

        class SlowResponse(FakeResponse):
            async def __aenter__(self):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                return self

            async def __aexit__(self, *exc):
                nonlocal in_flight
                in_flight -= 1
                return False

        gateway = make_gateway(handler=lambda method, url, params: SlowResponse(200, {}),
                               max_concurrent_requests=2)

        await asyncio.gather(*(gateway.send('GET', f'/quotes/S{i}') for i in range(6)))

        assert peak == 2
