"""
Tests for the expiry sweep and on-demand connection checks.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import T0
from sessionkeeper.db.models import PlatformConnection
from sessionkeeper.services.collaborators import HttpCheckValidator
from sessionkeeper.services.connections import ConnectionStatus, Platform, PlatformTokens
from sessionkeeper.services.expiry import EXPIRED_MESSAGE, CheckOutcome, ExpiryMonitor


class ScriptedValidator:
    """Answers per access token; an Exception value is raised instead."""

    def __init__(self, answers=None, default=True):
        self.answers = answers or {}
        self.default = default
        self.seen = []

    async def check(self, tokens):
        self.seen.append(tokens.access_token)
        answer = self.answers.get(tokens.access_token, self.default)
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return await answer(tokens)
        return answer


@pytest.fixture
def validator():
    return ScriptedValidator()


@pytest.fixture
def monitor(store, validator, clock):
    return ExpiryMonitor(store, {Platform.MAVELY: validator}, timeout=0.2, clock=clock)


def _expiring(connect, *users):
    for user in users:
        connect(user, expires_at=T0 + timedelta(minutes=5))


@pytest.mark.asyncio
async def test_valid_tokens_are_extended(store, connect, monitor):
    _expiring(connect, "u1")
    result = await monitor.sweep()
    assert result.renewed == 1
    rec = store.get("u1", "MAVELY")
    assert rec.status == ConnectionStatus.CONNECTED
    assert rec.token_expires_at == T0 + timedelta(hours=1)
    assert rec.last_refresh_at == T0
    assert result.outcomes[0].new_expires_at == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_invalid_tokens_are_marked_error(store, connect, monitor, validator):
    _expiring(connect, "u1")
    validator.answers["tok-u1"] = False
    result = await monitor.sweep()
    assert result.invalidated == 1
    rec = store.get("u1", "MAVELY")
    assert rec.status == ConnectionStatus.ERROR
    assert rec.refresh_error == EXPIRED_MESSAGE
    assert rec.encrypted_access_token is not None
    assert store.get_decrypted("u1", "MAVELY") is None


@pytest.mark.asyncio
async def test_tokens_outside_window_are_not_checked(connect, monitor, validator):
    connect("u1", expires_at=T0 + timedelta(minutes=30))
    result = await monitor.sweep()
    assert result.outcomes == []
    assert validator.seen == []


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep(store, connect, monitor, validator):
    _expiring(connect, "u1", "u2", "u3")
    validator.answers["tok-u2"] = RuntimeError("validator exploded")

    result = await monitor.sweep()

    assert [o.outcome for o in result.outcomes] == [
        CheckOutcome.RENEWED, CheckOutcome.FAILED, CheckOutcome.RENEWED,
    ]
    assert store.status("u1", "MAVELY").status == ConnectionStatus.CONNECTED
    assert store.status("u3", "MAVELY").status == ConnectionStatus.CONNECTED
    failed = store.get("u2", "MAVELY")
    assert failed.status == ConnectionStatus.ERROR
    assert failed.refresh_error == "refresh failed: RuntimeError: validator exploded"


@pytest.mark.asyncio
async def test_hung_validator_times_out(store, connect, monitor, validator):
    async def hang(tokens):
        await asyncio.sleep(5)
        return True

    _expiring(connect, "u1")
    validator.answers["tok-u1"] = hang
    result = await monitor.sweep()
    assert result.failed == 1
    assert store.get("u1", "MAVELY").refresh_error == "refresh failed: validator timed out after 0.2s"


@pytest.mark.asyncio
async def test_platform_without_validator_fails_record(store, connect, monitor):
    connect("u1", "SHOPMY", expires_at=T0 + timedelta(minutes=5))
    result = await monitor.sweep()
    assert result.failed == 1
    rec = store.get("u1", "SHOPMY")
    assert rec.status == ConnectionStatus.ERROR
    assert "no validator registered for SHOPMY" in rec.refresh_error


@pytest.mark.asyncio
async def test_undecryptable_tokens_fail_record(store, connect, monitor, validator, session_factory):
    _expiring(connect, "u1")
    with session_factory() as db:
        db.query(PlatformConnection).one().encrypted_access_token = "x.y.z"
        db.commit()

    result = await monitor.sweep()
    assert result.failed == 1
    assert validator.seen == []
    assert store.get("u1", "MAVELY").status == ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_check_connection_skips_non_connected(store, connect, monitor, validator):
    outcome = await monitor.check_connection("ghost", "MAVELY")
    assert outcome.outcome is CheckOutcome.SKIPPED

    connect("u1")
    store.disconnect("u1", "MAVELY")
    outcome = await monitor.check_connection("u1", "MAVELY")
    assert outcome.outcome is CheckOutcome.SKIPPED
    assert validator.seen == []


@pytest.mark.asyncio
async def test_check_connection_ignores_window(store, connect, monitor):
    connect("u1", expires_at=T0 + timedelta(hours=3))
    outcome = await monitor.check_connection("u1", "MAVELY")
    assert outcome.ok
    assert store.get("u1", "MAVELY").token_expires_at == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_reconnect_during_check_is_overwritten_by_the_check(store, connect, monitor, validator):
    # no per-key locking: the sweep's write lands after the reconnect
    async def reconnect_then_reject(tokens):
        connect("u1", access_token="fresh", expires_at=T0 + timedelta(hours=8))
        return False

    _expiring(connect, "u1")
    validator.answers["tok-u1"] = reconnect_then_reject
    await monitor.sweep()

    rec = store.get("u1", "MAVELY")
    assert rec.status == ConnectionStatus.ERROR
    assert rec.token_expires_at == T0 + timedelta(hours=8)


@pytest.mark.asyncio
async def test_disconnect_during_check_is_skipped(store, connect, monitor, validator):
    async def disconnect_then_accept(tokens):
        store.disconnect("u1", "MAVELY")
        return True

    _expiring(connect, "u1")
    validator.answers["tok-u1"] = disconnect_then_accept
    result = await monitor.sweep()
    assert result.outcomes[0].outcome is CheckOutcome.SKIPPED
    assert store.status("u1", "MAVELY").status == ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect_during_rejected_check_stays_disconnected(store, connect, monitor, validator):
    async def disconnect_then_reject(tokens):
        store.disconnect("u1", "MAVELY")
        return False

    _expiring(connect, "u1")
    validator.answers["tok-u1"] = disconnect_then_reject
    result = await monitor.sweep()

    assert result.outcomes[0].outcome is CheckOutcome.SKIPPED
    assert result.invalidated == 0
    rec = store.get("u1", "MAVELY")
    assert rec.status == ConnectionStatus.DISCONNECTED
    assert rec.refresh_error is None


@pytest.mark.asyncio
async def test_disconnect_during_failing_check_stays_disconnected(store, connect, monitor, validator):
    async def disconnect_then_raise(tokens):
        store.disconnect("u1", "MAVELY")
        raise RuntimeError("validator exploded")

    _expiring(connect, "u1")
    validator.answers["tok-u1"] = disconnect_then_raise
    result = await monitor.sweep()

    assert result.outcomes[0].outcome is CheckOutcome.SKIPPED
    assert store.status("u1", "MAVELY").status == ConnectionStatus.DISCONNECTED


class TestHttpCheckValidator:
    @pytest.mark.asyncio
    async def test_status_code_decides(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200 if request.headers["authorization"] == "Bearer good" else 401)

        http_validator = HttpCheckValidator("https://example.test/me", static_headers={"Origin": "https://app.test"},
                                            transport=httpx.MockTransport(handler))
        assert await http_validator.check(PlatformTokens(access_token="good", id_token="idt")) is True
        assert seen["x-id-token"] == "idt"
        assert seen["origin"] == "https://app.test"
        assert await http_validator.check(PlatformTokens(access_token="bad")) is False

    @pytest.mark.asyncio
    async def test_transport_error_is_invalid(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        http_validator = HttpCheckValidator("https://example.test/me", transport=httpx.MockTransport(handler))
        assert await http_validator.check(PlatformTokens(access_token="t")) is False
