"""
Unit tests for CredentialStore expiry handling, single-flight refresh and
failure propagation, plus the auth response parser.
"""

import asyncio
from datetime import timedelta

import pytest

from nest_clip_sync.auth import NEST_SCOPE
from nest_clip_sync.auth import CredentialStore
from nest_clip_sync.auth import GoogleAuthenticator
from nest_clip_sync.auth import parse_auth_response
from nest_clip_sync.models import AuthError
from tests.fake_client import FakeTokenExchange


def _store(clock, **kwargs) -> tuple[CredentialStore, FakeTokenExchange]:
    exchange = FakeTokenExchange(clock, **kwargs)
    return CredentialStore(exchange, NEST_SCOPE, clock=clock), exchange


class TestExpiry:
    @pytest.mark.asyncio
    async def test_first_call_refreshes(self, clock):
        store, exchange = _store(clock)
        assert await store.get_valid_token() == "token-1"
        assert exchange.calls == [NEST_SCOPE]
        assert store.expires_at == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_valid_token_is_reused(self, clock):
        store, exchange = _store(clock)
        await store.get_valid_token()
        clock.advance(timedelta(minutes=30))
        assert await store.get_valid_token() == "token-1"
        assert len(exchange.calls) == 1

    @pytest.mark.asyncio
    async def test_refreshes_inside_safety_margin(self, clock):
        """A token 30s from expiry is never handed out (margin is 60s)."""
        store, exchange = _store(clock)
        await store.get_valid_token()
        clock.advance(timedelta(minutes=59, seconds=30))
        assert await store.get_valid_token() == "token-2"
        assert len(exchange.calls) == 2

    @pytest.mark.asyncio
    async def test_never_returns_expired_token(self, clock):
        store, _ = _store(clock)
        for _ in range(5):
            token = await store.get_valid_token()
            assert store.expires_at > clock()
            assert token
            clock.advance(timedelta(minutes=45))

    @pytest.mark.asyncio
    async def test_already_expired_credential_is_rejected(self, clock):
        store, _ = _store(clock, validity=timedelta(seconds=10))
        with pytest.raises(AuthError):
            await store.get_valid_token()
        assert store.expires_at is None

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self, clock):
        store, exchange = _store(clock)
        await store.get_valid_token()
        store.invalidate()
        assert await store.get_valid_token() == "token-2"
        assert len(exchange.calls) == 2


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, clock):
        store, exchange = _store(clock, delay=0.02)
        tokens = await asyncio.gather(*(store.get_valid_token() for _ in range(10)))
        assert set(tokens) == {"token-1"}
        assert len(exchange.calls) == 1
        assert store.refresh_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_after_expiry_share_one_refresh(self, clock):
        store, exchange = _store(clock, delay=0.02)
        await store.get_valid_token()
        clock.advance(timedelta(hours=2))
        tokens = await asyncio.gather(*(store.get_valid_token() for _ in range(10)))
        assert set(tokens) == {"token-2"}
        assert len(exchange.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_is_shared_by_all_waiters(self, clock):
        store, exchange = _store(clock, fail=True, delay=0.02)
        results = await asyncio.gather(
            *(store.get_valid_token() for _ in range(10)), return_exceptions=True
        )
        assert all(isinstance(r, AuthError) for r in results)
        assert len(exchange.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_refresh(self, clock):
        store, exchange = _store(clock, delay=0.05)
        first = asyncio.create_task(store.get_valid_token())
        second = asyncio.create_task(store.get_valid_token())
        await asyncio.sleep(0.01)
        first.cancel()
        assert await second == "token-1"
        assert len(exchange.calls) == 1
        with pytest.raises(asyncio.CancelledError):
            await first


class TestFailures:
    @pytest.mark.asyncio
    async def test_refresh_failure_raises_auth_error(self, clock):
        store, _ = _store(clock, fail=True)
        with pytest.raises(AuthError):
            await store.get_valid_token()

    @pytest.mark.asyncio
    async def test_failure_is_retried_on_next_call(self, clock):
        store, exchange = _store(clock, fail=True)
        with pytest.raises(AuthError):
            await store.get_valid_token()
        exchange.fail = False
        assert await store.get_valid_token() == "token-2"

    @pytest.mark.asyncio
    async def test_unexpected_exchange_error_is_wrapped(self, clock):
        class Broken:
            async def exchange(self, service):
                raise RuntimeError("socket closed")

        store = CredentialStore(Broken(), NEST_SCOPE, clock=clock)
        with pytest.raises(AuthError, match="socket closed"):
            await store.get_valid_token()


class TestAuthResponse:
    def test_parses_key_value_lines(self):
        text = "SID=abc\nLSID=def\nAuth=ya29.token=with=equals\nExpiry=1772366400\n"
        fields = parse_auth_response(text)
        assert fields["Auth"] == "ya29.token=with=equals"
        assert fields["Expiry"] == "1772366400"

    def test_ignores_lines_without_separator(self):
        assert parse_auth_response("garbage\nError=BadAuthentication") == {
            "Error": "BadAuthentication"
        }

    def test_form_carries_scope_and_identity(self):
        auth = GoogleAuthenticator(None, "user@example.com", "aas_et/master", "0123456789abcdef")
        form = auth._form(NEST_SCOPE)
        assert form["service"] == NEST_SCOPE
        assert form["Email"] == "user@example.com"
        assert form["EncryptedPasswd"] == "aas_et/master"
        assert form["androidId"] == "0123456789abcdef"

    def test_android_id_is_generated(self):
        auth = GoogleAuthenticator(None, "user@example.com", "aas_et/master")
        assert len(auth.android_id) == 16
        int(auth.android_id, 16)
