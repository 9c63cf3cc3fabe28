"""Account routes -- list, switch, remove, badge updates, lifecycle, OTP login.

Tokens never leave the process: responses carry account metadata plus
computed flags only. Path ids accept the storage key (``member_7``) or the
bare id.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sessiondeck.core.database import Account
from sessiondeck.core.switch import SwitchOutcome
from sessiondeck.core.tokens import is_expiring_soon

router = APIRouter()


# --- Pydantic v2 request/response models ---


class AccountResponse(BaseModel):
    """Account data with computed fields for API responses."""

    key: str
    id: str
    kind: str
    handle: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_logged_in: bool = True
    unread_count: int = 0
    last_active_at: Optional[int] = None
    logged_out_at: Optional[int] = None
    logout_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Computed fields
    is_active: bool = False
    has_credential: bool = False
    is_expiring_soon: bool = True


class AccountPatchRequest(BaseModel):
    display_name: Optional[str] = None
    unread_count: Optional[int] = Field(default=None, ge=0)


class LogoutCurrentResponse(BaseModel):
    switched_to: Optional[AccountResponse] = None
    navigate_to_landing: bool


class LifecycleRequest(BaseModel):
    state: str


class LifecycleResponse(BaseModel):
    state: str
    sweep_scheduled: bool


class LoginStartRequest(BaseModel):
    email: str
    flow: str = "login"


class LoginStartResponse(BaseModel):
    email: str
    flow: str
    expires_at: float
    account_id: Optional[str] = None


class LoginVerifyRequest(BaseModel):
    email: str
    code: str


# --- Helpers ---


def _get_ctx(request: Request):
    """Get the session context from app state."""
    return getattr(request.app.state, "ctx", None)


def _ctx_unavailable():
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": {"message": "Session store unavailable", "code": "STORE_UNAVAILABLE"}
        },
    )


def _not_found(detail: str):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={
            "error": {
                "message": "Account not found",
                "code": "NOT_FOUND",
                "detail": detail,
            }
        },
    )


def _account_to_response(
    account: Account, active_key: Optional[str], buffer_minutes: int = 10
) -> AccountResponse:
    """Convert an Account to an API response, dropping both tokens.

    >>> r = _account_to_response(Account(id="1", access_token="opaque"), "member_1")
    >>> r.is_active, r.has_credential, r.is_expiring_soon
    (True, True, True)
    >>> "access_token" in r.model_dump()
    False
    """
    return AccountResponse(
        key=account.key,
        id=account.id,
        kind=account.kind,
        handle=account.handle,
        email=account.email,
        display_name=account.display_name,
        avatar_url=account.avatar_url,
        is_logged_in=account.is_logged_in,
        unread_count=account.unread_count,
        last_active_at=account.last_active_at,
        logged_out_at=account.logged_out_at,
        logout_reason=account.logout_reason,
        created_at=account.created_at,
        updated_at=account.updated_at,
        is_active=account.key == active_key,
        has_credential=bool(account.access_token),
        is_expiring_soon=is_expiring_soon(account.access_token, buffer_minutes),
    )


# --- Routes ---


@router.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(request: Request):
    """List stored accounts in the order they were added."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    active_key = await ctx.store.active_key()
    buffer = ctx.config.refresh_buffer_minutes
    return [
        _account_to_response(a, active_key, buffer) for a in await ctx.store.list_accounts()
    ]


@router.get("/accounts/active", response_model=Optional[AccountResponse])
async def get_active_account(request: Request):
    """The active account, or null when there is none."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    account = await ctx.store.get_active()
    if account is None:
        return None
    return _account_to_response(account, account.key, ctx.config.refresh_buffer_minutes)


@router.post("/accounts/{account_id}/switch", response_model=SwitchOutcome)
async def switch_account(account_id: str, request: Request):
    """Run the switch protocol. ``closes_switcher`` tells the UI what to do."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()
    return await ctx.switcher.switch(account_id)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
async def update_account(account_id: str, body: AccountPatchRequest, request: Request):
    """Update display_name and/or unread_count for an account."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise ValueError("Nothing to update")
    if not await ctx.store.update(account_id, **updates):
        return _not_found(f"No account with id={account_id}")

    account = await ctx.store.get(account_id)
    return _account_to_response(
        account, await ctx.store.active_key(), ctx.config.refresh_buffer_minutes
    )


@router.delete("/accounts/{account_id}")
async def remove_account(account_id: str, request: Request):
    """Remove an account. The active pointer moves if it pointed here."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    if not await ctx.store.remove(account_id):
        return _not_found(f"No account with id={account_id}")
    return {
        "removed": True,
        "active_id": await ctx.store.active_id(),
        "active_key": await ctx.store.active_key(),
    }


@router.post("/accounts/logout-current", response_model=LogoutCurrentResponse)
async def logout_current(request: Request):
    """Log out the active account and move to the next logged-in one."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    current = await ctx.store.get_active()
    next_account = await ctx.store.logout_current()
    if current is not None:
        await ctx.client.logout(current.id, current.kind)

    if next_account is None:
        return LogoutCurrentResponse(switched_to=None, navigate_to_landing=True)
    return LogoutCurrentResponse(
        switched_to=_account_to_response(
            next_account, next_account.key, ctx.config.refresh_buffer_minutes
        ),
        navigate_to_landing=False,
    )


@router.post("/accounts/clear")
async def clear_accounts(request: Request):
    """Hard logout: delete every account and destroy the encryption key."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()
    return {"cleared": await ctx.store.clear_all()}


@router.post("/accounts/{account_id}/reauth", response_model=LoginStartResponse)
async def reauth_account(account_id: str, request: Request):
    """Send a passcode to a logged-out account's email."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    account = await ctx.store.get(account_id)
    if account is None:
        return _not_found(f"No account with id={account_id}")
    challenge = await ctx.login.reauth(account)
    return LoginStartResponse(**challenge.model_dump())


@router.post("/lifecycle", response_model=LifecycleResponse)
async def app_lifecycle(body: LifecycleRequest, background_tasks: BackgroundTasks, request: Request):
    """Report an app state change; a foreground transition schedules a refresh sweep."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    scheduled = ctx.scheduler.note_app_state(body.state)
    if scheduled:
        background_tasks.add_task(ctx.scheduler.sweep)
    return LifecycleResponse(state=body.state, sweep_scheduled=scheduled)


@router.post("/login/start", response_model=LoginStartResponse)
async def login_start(body: LoginStartRequest, request: Request):
    """Send a one-time passcode to an email."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    challenge = await ctx.login.start(body.email, body.flow)
    return LoginStartResponse(**challenge.model_dump())


@router.post("/login/verify", response_model=AccountResponse)
async def login_verify(body: LoginVerifyRequest, request: Request):
    """Check a passcode and store the account as active."""
    ctx = _get_ctx(request)
    if ctx is None:
        return _ctx_unavailable()

    account = await ctx.login.verify(body.email, body.code)
    return _account_to_response(account, account.key, ctx.config.refresh_buffer_minutes)
