"""Foreground-triggered token refresh sweep.

Runs when the app moves from background/inactive to active, never on a
timer. Each stored account is checked sequentially:

- skipped if logged out or without a usable access token
- skipped if the access token is not within the refresh buffer
- logged out if the refresh token is missing or implausibly short
- refreshed otherwise; 401/403 logs the account out, network errors and
  5xx leave it untouched for the next foreground transition
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from sessiondeck.core.client import ApiClient
from sessiondeck.core.database import Account
from sessiondeck.core.store import CredentialStore
from sessiondeck.core.tokens import (
    DEFAULT_BUFFER_MINUTES,
    MIN_REFRESH_TOKEN_LENGTH,
    is_expiring_soon,
    is_refresh_token_plausible,
)
from sessiondeck.errors import AuthRejected, NetworkUnavailable

logger = logging.getLogger("sessiondeck.refresh")

ACTIVE = "active"
BACKGROUND_STATES = frozenset({"background", "inactive"})
APP_STATES = frozenset({ACTIVE}) | BACKGROUND_STATES

_SOURCE = "refresh_scheduler"


def is_foreground_transition(previous: Optional[str], current: str) -> bool:
    """
    >>> is_foreground_transition("background", "active")
    True
    >>> is_foreground_transition("inactive", "active")
    True
    >>> is_foreground_transition("active", "active")
    False
    >>> is_foreground_transition("active", "background")
    False
    """
    return previous in BACKGROUND_STATES and current == ACTIVE


class SessionRefreshScheduler:
    def __init__(
        self,
        store: CredentialStore,
        client: ApiClient,
        *,
        buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
        min_refresh_token_length: int = MIN_REFRESH_TOKEN_LENGTH,
        initial_state: str = ACTIVE,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.buffer_minutes = buffer_minutes
        self.min_refresh_token_length = min_refresh_token_length
        self.app_state = initial_state
        self._clock = clock
        self._sweep_lock = asyncio.Lock()

    def note_app_state(self, next_state: str) -> bool:
        """Record an app lifecycle change. True if it is a foreground transition."""
        if next_state not in APP_STATES:
            raise ValueError(f"Unknown app state: {next_state!r}")
        previous = self.app_state
        self.app_state = next_state
        return is_foreground_transition(previous, next_state)

    async def on_app_state_change(self, next_state: str) -> Optional[dict]:
        """Record an app lifecycle change; sweep on a foreground transition.

        Returns the sweep counts, or None if no sweep ran.
        """
        if not self.note_app_state(next_state):
            return None
        logger.info("App came to foreground, checking tokens")
        return await self.sweep()

    async def sweep(self) -> Optional[dict]:
        """Check every account once and refresh the ones near expiry.

        Returns counts ``{checked, refreshed, skipped, failed, logged_out}``,
        or None if another sweep is already running. Never raises.
        """
        if self._sweep_lock.locked():
            logger.debug("Refresh sweep already running, skipping trigger")
            return None

        result = {"checked": 0, "refreshed": 0, "skipped": 0, "failed": 0, "logged_out": 0}
        async with self._sweep_lock:
            try:
                accounts = await self.store.list_accounts()
            except Exception as exc:
                logger.error("Refresh sweep could not list accounts: %s", exc)
                return result

            for account in accounts:
                result["checked"] += 1
                outcome = await self._refresh_one(account)
                result[outcome] += 1

        logger.info(
            "Refresh sweep done: %d checked, %d refreshed, %d logged out, %d failed",
            result["checked"],
            result["refreshed"],
            result["logged_out"],
            result["failed"],
        )
        return result

    async def _log_out(self, account: Account, reason: str) -> str:
        try:
            await self.store.mark_logged_out(account.key, reason, _SOURCE)
        except Exception as exc:
            logger.error("Account %s: could not mark logged out: %s", account.key, exc)
            return "failed"
        return "logged_out"

    async def _refresh_one(self, account: Account) -> str:
        if not account.is_logged_in or not account.access_token:
            logger.debug("Skipping %s - logged out or no token", account.key)
            return "skipped"

        if not is_expiring_soon(account.access_token, self.buffer_minutes, now=self._clock()):
            return "skipped"

        refresh_token = account.refresh_token
        if not is_refresh_token_plausible(refresh_token, self.min_refresh_token_length):
            return await self._log_out(
                account, f"Invalid refresh token (length: {len(refresh_token or '')})"
            )

        try:
            tokens = await self.client.refresh(refresh_token)
        except AuthRejected as exc:
            return await self._log_out(account, str(exc))
        except NetworkUnavailable as exc:
            logger.warning("Account %s: refresh deferred to next foreground: %s", account.key, exc)
            return "failed"
        except Exception as exc:
            logger.error("Account %s: refresh error: %s", account.key, exc)
            return "failed"

        try:
            updated = await self.store.update(
                account.key,
                access_token=tokens["access_token"],
                refresh_token=tokens.get("refresh_token") or refresh_token,
            )
        except Exception as exc:
            logger.error(
                "Token refresh succeeded but store update FAILED for account %s: %s",
                account.key,
                exc,
            )
            return "failed"

        if not updated:
            return "failed"
        logger.info("Token refreshed for account %s", account.key)
        return "refreshed"
