"""Tests for the Request Dispatcher — credential-rotating retry across the key pool."""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest

from studio.core.exceptions import NoUsableCredentialError, TransportError, UpstreamRequestError
from studio.gateway.dispatcher import RequestDispatcher
from studio.gateway.key_pool import KeyPool
from studio.gateway.types import KeyHealth, UpstreamResult

OK = UpstreamResult(ok=True, status=200, data={"request_id": "req-1"})
UNAUTHORIZED = UpstreamResult(ok=False, status=401, data={"error": "Incorrect API key provided"})
FORBIDDEN = UpstreamResult(ok=False, status=403, data={"error": "Forbidden"})
RATE_LIMITED = UpstreamResult(ok=False, status=429, data={"error": "Too many requests"})
SERVER_ERROR = UpstreamResult(ok=False, status=500, data=None)


def _credentials(send: AsyncMock) -> list[str | None]:
    return [c.args[0] for c in send.await_args_list]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_rotates_past_invalid_keys(self, make_pool):
        pool = make_pool("k1", "k2", "k3")
        send = AsyncMock(side_effect=[UNAUTHORIZED, FORBIDDEN, OK])

        outcome = await RequestDispatcher(pool).dispatch(send)

        assert outcome.attempts == 3
        assert outcome.key_id == "k3"
        assert outcome.result is OK
        assert send.await_count == 3
        assert _credentials(send) == [pool.get(k).key for k in ("k1", "k2", "k3")]
        assert pool.get("k1").health == KeyHealth.INVALID
        assert pool.get("k2").health == KeyHealth.INVALID
        assert pool.get("k3").health == KeyHealth.OK
        assert pool.get("k1").last_error == "Incorrect API key provided"
        assert pool.get("k1").last_checked_at is not None
        assert pool.cursor == 0

    @pytest.mark.asyncio
    async def test_success_stops_immediately(self, make_pool):
        pool = make_pool("k1", "k2", "k3", cursor=1)
        pool.set_health("k2", health=KeyHealth.ERROR, last_error="old failure")
        send = AsyncMock(return_value=OK)

        outcome = await RequestDispatcher(pool).dispatch(send)

        assert outcome.attempts == 1
        assert outcome.key_id == "k2"
        assert pool.get("k2").health == KeyHealth.OK
        assert pool.get("k2").last_error is None
        assert pool.cursor == 2

    @pytest.mark.asyncio
    async def test_rejected_success_leaves_health_untouched(self, make_pool):
        pool = make_pool("k1", "k2")
        send = AsyncMock(return_value=UpstreamResult(ok=True, status=200, data={"status": "accepted"}))

        def accept(result):
            raise UpstreamRequestError("xAI response missing request_id", 502)

        with pytest.raises(UpstreamRequestError) as exc:
            await RequestDispatcher(pool).dispatch(send, accept=accept)

        assert exc.value.status_code == 502
        assert send.await_count == 1
        assert pool.get("k1").health == KeyHealth.UNKNOWN
        assert pool.get("k1").last_checked_at is None
        assert pool.cursor == 1

    @pytest.mark.asyncio
    async def test_accepted_success_marks_key_ok(self, make_pool):
        pool = make_pool("k1")
        accept = Mock()

        outcome = await RequestDispatcher(pool).dispatch(AsyncMock(return_value=OK), accept=accept)

        accept.assert_called_once_with(OK)
        assert outcome.key_id == "k1"
        assert pool.get("k1").health == KeyHealth.OK

    @pytest.mark.asyncio
    async def test_cursor_tracks_total_attempts(self, make_pool):
        pool = make_pool("k1", "k2", "k3")
        dispatcher = RequestDispatcher(pool)
        attempts = 0

        outcome = await dispatcher.dispatch(AsyncMock(return_value=OK))
        attempts += outcome.attempts
        assert pool.cursor == attempts % 3

        outcome = await dispatcher.dispatch(AsyncMock(side_effect=[RATE_LIMITED, OK]))
        attempts += outcome.attempts
        assert pool.cursor == attempts % 3

        with pytest.raises(UpstreamRequestError):
            await dispatcher.dispatch(AsyncMock(return_value=SERVER_ERROR))
        attempts += 1
        assert pool.cursor == attempts % 3

        with pytest.raises(UpstreamRequestError):
            await dispatcher.dispatch(AsyncMock(return_value=UNAUTHORIZED))
        attempts += 3
        assert pool.cursor == attempts % 3

    @pytest.mark.asyncio
    async def test_non_retryable_failure_aborts(self, make_pool):
        pool = make_pool("k1", "k2")
        send = AsyncMock(return_value=UpstreamResult(ok=False, status=400, data={"error": "bad prompt"}))

        with pytest.raises(UpstreamRequestError) as exc:
            await RequestDispatcher(pool).dispatch(send)

        assert exc.value.status_code == 400
        assert exc.value.message == "bad prompt"
        assert send.await_count == 1
        assert pool.get("k1").health == KeyHealth.ERROR
        assert pool.get("k2").health == KeyHealth.UNKNOWN
        assert pool.cursor == 1

    @pytest.mark.asyncio
    async def test_single_key_is_not_retried(self, make_pool):
        pool = make_pool("k1")
        send = AsyncMock(return_value=UNAUTHORIZED)

        with pytest.raises(UpstreamRequestError) as exc:
            await RequestDispatcher(pool).dispatch(send)

        assert exc.value.is_auth_failure
        assert send.await_count == 1
        assert pool.get("k1").health == KeyHealth.INVALID
        assert pool.cursor == 0

    @pytest.mark.asyncio
    async def test_exhausted_surfaces_last_error(self, make_pool):
        pool = make_pool("k1", "k2", cursor=1)
        send = AsyncMock(
            side_effect=[
                RATE_LIMITED,
                UpstreamResult(ok=False, status=429, data={"error": "slow down"}),
            ]
        )

        with pytest.raises(UpstreamRequestError) as exc:
            await RequestDispatcher(pool).dispatch(send)

        assert exc.value.is_rate_limited
        assert exc.value.message == "slow down"
        assert send.await_count == 2
        assert {e.health for e in pool.entries} == {KeyHealth.RATE_LIMITED}
        assert pool.cursor == 1

    @pytest.mark.asyncio
    async def test_disabled_keys_are_not_used(self, make_pool):
        pool = make_pool("k1", "k2")
        pool.toggle_enabled("k1")
        send = AsyncMock(return_value=UNAUTHORIZED)

        with pytest.raises(UpstreamRequestError):
            await RequestDispatcher(pool).dispatch(send)

        assert _credentials(send) == [pool.get("k2").key]
        assert pool.get("k1").health == KeyHealth.UNKNOWN

    @pytest.mark.asyncio
    async def test_transport_error_marks_key_and_aborts(self, make_pool):
        pool = make_pool("k1", "k2")
        send = AsyncMock(side_effect=TransportError("connection reset"))

        with pytest.raises(TransportError):
            await RequestDispatcher(pool).dispatch(send)

        assert send.await_count == 1
        assert pool.get("k1").health == KeyHealth.ERROR
        assert pool.get("k1").last_error == "connection reset"
        assert pool.cursor == 1


class TestEmptyPool:
    @pytest.mark.asyncio
    async def test_no_usable_credential(self):
        send = AsyncMock(return_value=OK)
        with pytest.raises(NoUsableCredentialError):
            await RequestDispatcher(KeyPool()).dispatch(send)
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_anonymous_attempt_when_allowed(self):
        pool = KeyPool()
        send = AsyncMock(return_value=OK)

        outcome = await RequestDispatcher(pool).dispatch(send, allow_anonymous=True)

        assert outcome.key_id is None
        assert outcome.attempts == 1
        send.assert_awaited_once_with(None)
        assert pool.cursor == 0

    @pytest.mark.asyncio
    async def test_all_disabled_counts_as_empty(self, make_pool):
        pool = make_pool("k1")
        pool.toggle_enabled("k1")
        with pytest.raises(NoUsableCredentialError):
            await RequestDispatcher(pool).dispatch(AsyncMock(return_value=OK))
