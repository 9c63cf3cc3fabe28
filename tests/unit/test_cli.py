"""Tests for the sessiondeck CLI commands."""

import asyncio
import json
import time
from unittest import mock

import httpx
import jwt
from click.testing import CliRunner

from sessiondeck.cli import main
from sessiondeck.config import SessionConfig
from sessiondeck.core.context import SessionContext
from sessiondeck.core.store import AccountInput

_KEY = "unit-test-signing-key-0123456789abcdef"
RT = "refresh-" + "r" * 32


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _jwt(email: str) -> str:
    return jwt.encode({"email": email, "exp": int(time.time()) + 3600}, _KEY, algorithm="HS256")


def _handler(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content) if request.content else {}
    if request.url.path == "/auth/validate-token":
        return httpx.Response(200, json={"valid": True})
    if request.url.path == "/auth/v2/send-otp":
        return httpx.Response(200, json={"success": True})
    if request.url.path == "/auth/v2/verify-otp":
        return httpx.Response(
            200,
            json={
                "user": {"id": 3, "email": body["email"]},
                "session": {"accessToken": _jwt(body["email"]), "refreshToken": RT},
            },
        )
    return httpx.Response(200, json={})


def _ctx(seed: bool = True) -> SessionContext:
    ctx = SessionContext.in_memory(
        SessionConfig(api_base_url="http://api.test"), transport=httpx.MockTransport(_handler)
    )
    if seed:
        async def scenario():
            await ctx.store.add(AccountInput(id="B", email="b@test.com", access_token=_jwt("b@test.com"), refresh_token=RT))
            await ctx.store.add(AccountInput(id="A", email="a@test.com", access_token=_jwt("a@test.com"), refresh_token=RT))

        _run(scenario())
    return ctx


def _invoke(ctx, args, **kwargs):
    with mock.patch("sessiondeck.cli.get_context", return_value=ctx):
        return CliRunner().invoke(main, args, **kwargs)


def test_accounts_lists_without_tokens():
    """
    >>> test_accounts_lists_without_tokens()
    """
    ctx = _ctx()
    result = _invoke(ctx, ["accounts"])
    assert result.exit_code == 0
    assert "a@test.com" in result.output
    assert "b@test.com" in result.output
    assert RT not in result.output


def test_accounts_empty():
    """
    >>> test_accounts_empty()
    """
    result = _invoke(_ctx(seed=False), ["accounts"])
    assert result.exit_code == 0
    assert "No accounts stored" in result.output


def test_switch_command():
    """
    >>> test_switch_command()
    """
    ctx = _ctx()
    result = _invoke(ctx, ["switch", "B"])
    assert result.exit_code == 0
    assert _run(ctx.store.active_id()) == "B"


def test_switch_to_logged_out_exits_2():
    """
    >>> test_switch_to_logged_out_exits_2()
    """
    ctx = _ctx()
    _run(ctx.store.mark_logged_out("B", "expired", "test"))
    result = _invoke(ctx, ["switch", "B"])
    assert result.exit_code == 2
    assert "Re-authentication required" in result.output


def test_switch_unknown_exits_1():
    """
    >>> test_switch_unknown_exits_1()
    """
    result = _invoke(_ctx(), ["switch", "nope"])
    assert result.exit_code == 1


def test_remove_with_confirmation():
    """
    >>> test_remove_with_confirmation()
    """
    ctx = _ctx()
    cancelled = _invoke(ctx, ["remove", "B"], input="n\n")
    assert "Cancelled" in cancelled.output
    assert _run(ctx.store.get("B")) is not None

    result = _invoke(ctx, ["remove", "B", "-y"])
    assert result.exit_code == 0
    assert _run(ctx.store.get("B")) is None
    assert _invoke(ctx, ["remove", "B", "-y"]).exit_code == 1


def test_clear_requires_typed_phrase():
    """
    >>> test_clear_requires_typed_phrase()
    """
    ctx = _ctx()
    result = _invoke(ctx, ["clear"], input="clear\n")
    assert "Cancelled" in result.output
    assert ctx.db.count_accounts() == 2

    result = _invoke(ctx, ["clear"], input="CLEAR ALL\n")
    assert result.exit_code == 0
    assert "Cleared 2 accounts" in result.output
    assert ctx.db.count_accounts() == 0


def test_logout_moves_to_next():
    """
    >>> test_logout_moves_to_next()
    """
    ctx = _ctx()
    result = _invoke(ctx, ["logout"])
    assert result.exit_code == 0
    assert "Logged out a@test.com" in result.output
    assert _run(ctx.store.active_id()) == "B"


def test_refresh_reports_counts():
    """
    >>> test_refresh_reports_counts()
    """
    result = _invoke(_ctx(), ["refresh"])
    assert result.exit_code == 0
    assert "Checked 2" in result.output


def test_login_with_code():
    """
    >>> test_login_with_code()
    """
    ctx = _ctx(seed=False)
    result = _invoke(ctx, ["login", "new@test.com", "--code", "123456"])
    assert result.exit_code == 0
    assert "Signed in as new@test.com" in result.output
    assert _run(ctx.store.active_id()) == "3"


def test_login_bad_email_fails():
    """
    >>> test_login_bad_email_fails()
    """
    result = _invoke(_ctx(seed=False), ["login", "not-an-email", "--code", "1"])
    assert result.exit_code == 1
    assert "FAIL" in result.output


def test_migrate_nothing_to_do():
    """
    >>> test_migrate_nothing_to_do()
    """
    result = _invoke(_ctx(), ["migrate"])
    assert result.exit_code == 0
    assert "Nothing to migrate" in result.output
