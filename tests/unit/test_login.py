"""Unit tests for the passcode login / add-account / re-auth flows."""

import asyncio
import json

import httpx
import pytest

from sessiondeck.config import SessionConfig
from sessiondeck.core.context import SessionContext
from sessiondeck.core.login import LoginManager
from sessiondeck.core.store import AccountInput
from sessiondeck.errors import CapacityExceeded, ChallengeExpired

RT = "refresh-" + "z" * 32


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


class _FakeAuthServer:
    """Records requests and answers the OTP endpoints."""

    def __init__(self, user_id=77, profile=None, profile_status=200):
        self.requests: list[tuple[str, dict]] = []
        self.user_id = user_id
        self.profile = profile or {"name": "Pat Doe", "profile_picture": "http://img/pat.png"}
        self.profile_status = profile_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.url.path, body))
        if request.url.path == "/auth/v2/send-otp":
            return httpx.Response(200, json={"success": True})
        if request.url.path == "/auth/v2/verify-otp":
            return httpx.Response(
                200,
                json={
                    "user": {
                        "id": self.user_id,
                        "type": "member",
                        "username": "pat",
                        "email": body["email"],
                        "name": "Pat",
                    },
                    "session": {"accessToken": "at-" + body["token"], "refreshToken": RT},
                },
            )
        if request.url.path == "/auth/get-user-profile":
            return httpx.Response(self.profile_status, json=self.profile)
        return httpx.Response(404, json={"error": "not found"})

    def paths(self) -> list[str]:
        return [path for path, _ in self.requests]


def _make_ctx(server) -> SessionContext:
    config = SessionConfig(api_base_url="http://api.test")
    return SessionContext.in_memory(config, transport=httpx.MockTransport(server))


def test_start_and_verify_stores_active_account():
    """
    >>> test_start_and_verify_stores_active_account()
    """
    server = _FakeAuthServer()
    ctx = _make_ctx(server)

    async def scenario():
        challenge = await ctx.login.start("  Pat@Example.COM ", "add_account")
        account = await ctx.login.verify("pat@example.com", " 123456 ")
        return challenge, account, await ctx.store.get_active()

    challenge, account, active = _run(scenario())
    assert challenge.email == "pat@example.com"
    assert challenge.flow == "add_account"
    assert server.paths() == ["/auth/v2/send-otp", "/auth/v2/verify-otp", "/auth/get-user-profile"]
    assert server.requests[1][1] == {
        "email": "pat@example.com",
        "token": "123456",
        "deviceId": ctx.device_id,
    }
    assert account.id == "77"
    assert account.display_name == "Pat Doe"
    assert account.avatar_url == "http://img/pat.png"
    assert account.handle == "pat"
    assert account.access_token == "at-123456"
    assert active.id == "77"
    assert ctx.login.pending("pat@example.com") is None


def test_verify_without_challenge():
    """
    >>> test_verify_without_challenge()
    """
    server = _FakeAuthServer()
    ctx = _make_ctx(server)
    try:
        _run(ctx.login.verify("pat@example.com", "123456"))
    except ChallengeExpired:
        pass
    else:
        raise AssertionError("verify without a challenge should fail")
    assert server.requests == []


def test_challenge_expires():
    """Challenges past their TTL are purged and verify fails.

    >>> test_challenge_expires()
    """
    server = _FakeAuthServer()
    ctx = _make_ctx(server)
    now = [1000.0]
    login = LoginManager(ctx.store, ctx.client, ttl_seconds=600, clock=lambda: now[0])

    async def scenario():
        await login.start("pat@example.com")
        now[0] += 599
        assert login.pending("pat@example.com") is not None
        now[0] += 1
        assert login.pending("pat@example.com") is None
        await login.verify("pat@example.com", "1")

    with pytest.raises(ChallengeExpired):
        _run(scenario())


def test_restart_replaces_challenge():
    """
    >>> test_restart_replaces_challenge()
    """
    ctx = _make_ctx(_FakeAuthServer())
    now = [1000.0]
    login = LoginManager(ctx.store, ctx.client, ttl_seconds=600, clock=lambda: now[0])

    async def scenario():
        await login.start("pat@example.com", "login")
        now[0] += 300
        await login.start("pat@example.com", "add_account")
        return login.pending("pat@example.com")

    challenge = _run(scenario())
    assert challenge.flow == "add_account"
    assert challenge.expires_at == 1900.0


def test_start_rejects_bad_input():
    """Bad email or flow is rejected before any request."""
    server = _FakeAuthServer()
    ctx = _make_ctx(server)
    with pytest.raises(ValueError):
        _run(ctx.login.start("not-an-email"))
    with pytest.raises(ValueError):
        _run(ctx.login.start("pat@example.com", "bogus"))
    assert server.requests == []


def test_profile_failure_is_best_effort():
    """
    >>> test_profile_failure_is_best_effort()
    """
    ctx = _make_ctx(_FakeAuthServer(profile_status=500))

    async def scenario():
        await ctx.login.start("pat@example.com")
        return await ctx.login.verify("pat@example.com", "42")

    account = _run(scenario())
    assert account.display_name == "Pat"
    assert account.avatar_url is None


def test_capacity_applies_and_keeps_challenge():
    """
    >>> test_capacity_applies_and_keeps_challenge()
    """
    ctx = _make_ctx(_FakeAuthServer(user_id=99))

    async def scenario():
        for n in range(5):
            await ctx.store.add(AccountInput(id=str(n), email=f"u{n}@test.com", access_token="t", refresh_token=RT))
        await ctx.login.start("pat@example.com")
        try:
            await ctx.login.verify("pat@example.com", "42")
        except CapacityExceeded:
            return ctx.login.pending("pat@example.com")
        raise AssertionError("sixth account accepted")

    assert _run(scenario()) is not None


def test_reauth_prefills_email():
    """
    >>> test_reauth_prefills_email()
    """
    server = _FakeAuthServer(user_id=5)
    ctx = _make_ctx(server)

    async def scenario():
        await ctx.store.add(AccountInput(id="5", email="Pat@Example.com", access_token="t", refresh_token=RT))
        await ctx.store.mark_logged_out("5", "expired", "test")
        challenge = await ctx.login.reauth(await ctx.store.get("5"))
        account = await ctx.login.verify(challenge.email, "31337")
        return challenge, account

    challenge, account = _run(scenario())
    assert challenge.flow == "reauth"
    assert challenge.account_id == "member_5"
    assert challenge.email == "pat@example.com"
    assert account.is_logged_in is True
    assert account.access_token == "at-31337"
