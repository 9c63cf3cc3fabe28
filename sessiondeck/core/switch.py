"""Account switch protocol.

States: idle -> validating -> switched | reauth_required | failed.

``switched`` and ``reauth_required`` close the account switcher; ``failed``
keeps it open for a retry and leaves the store exactly as it was.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, computed_field

from sessiondeck.core.client import ApiClient
from sessiondeck.core.database import Account
from sessiondeck.core.store import CredentialStore
from sessiondeck.core.tokens import (
    MIN_REFRESH_TOKEN_LENGTH,
    email_from_token,
    is_refresh_token_plausible,
)
from sessiondeck.errors import AccountLoggedOut, NetworkUnavailable, TokenMismatch

logger = logging.getLogger("sessiondeck.switch")

_SOURCE = "account_switcher"
GENERIC_FAILURE = "Failed to switch account. Please try again."


class SwitchState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SWITCHED = "switched"
    REAUTH_REQUIRED = "reauth_required"
    FAILED = "failed"


class SwitchOutcome(BaseModel):
    """Result of one switch attempt.

    >>> SwitchOutcome(state=SwitchState.FAILED, account_id="1").closes_switcher
    False
    >>> SwitchOutcome(state=SwitchState.REAUTH_REQUIRED, account_id="1").closes_switcher
    True
    """

    state: SwitchState
    account_id: Optional[str] = None
    email: Optional[str] = None
    reason: Optional[str] = None

    @computed_field
    @property
    def closes_switcher(self) -> bool:
        return self.state in (SwitchState.SWITCHED, SwitchState.REAUTH_REQUIRED)


class FailOpenPolicy:
    """Decides how an indeterminate validation (network error) is treated.

    With ``enabled``, network errors count as valid for up to
    ``max_consecutive`` attempts per account, then fail closed. Risk: a
    revoked token is accepted until the next authenticated call fails.

    >>> policy = FailOpenPolicy(enabled=True, max_consecutive=2)
    >>> policy.on_indeterminate("a"), policy.on_indeterminate("a"), policy.on_indeterminate("a")
    (True, True, False)
    >>> policy.on_definitive("a")
    >>> policy.on_indeterminate("a")
    True
    >>> FailOpenPolicy(enabled=False).on_indeterminate("a")
    False
    """

    def __init__(self, enabled: bool = True, max_consecutive: int = 3):
        self.enabled = enabled
        self.max_consecutive = max_consecutive
        self._failures: dict[str, int] = {}

    def on_indeterminate(self, account_id: str) -> bool:
        """Record a network failure; return True to treat the token as valid."""
        count = self._failures.get(account_id, 0) + 1
        self._failures[account_id] = count
        return self.enabled and count <= self.max_consecutive

    def on_definitive(self, account_id: str) -> None:
        self._failures.pop(account_id, None)

    def consecutive_failures(self, account_id: str) -> int:
        return self._failures.get(account_id, 0)


class AccountSwitcher:
    def __init__(
        self,
        store: CredentialStore,
        client: ApiClient,
        *,
        policy: Optional[FailOpenPolicy] = None,
        min_refresh_token_length: int = MIN_REFRESH_TOKEN_LENGTH,
    ):
        self.store = store
        self.client = client
        self.policy = policy or FailOpenPolicy()
        self.min_refresh_token_length = min_refresh_token_length
        self.state = SwitchState.IDLE

    def _finish(
        self,
        state: SwitchState,
        account: Optional[Account] = None,
        account_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SwitchOutcome:
        self.state = state
        return SwitchOutcome(
            state=state,
            account_id=account.id if account else account_id,
            email=account.email if account else None,
            reason=reason,
        )

    async def _validate(self, account: Account) -> bool:
        try:
            valid = await self.client.validate(account.access_token)
        except NetworkUnavailable as exc:
            if self.policy.on_indeterminate(account.key):
                logger.warning(
                    "Validation for %s indeterminate (%s), failing open (%d/%d)",
                    account.key,
                    exc,
                    self.policy.consecutive_failures(account.key),
                    self.policy.max_consecutive,
                )
                return True
            logger.warning("Validation for %s indeterminate (%s), failing closed", account.key, exc)
            return False
        self.policy.on_definitive(account.key)
        return valid

    async def _require_reauth(self, account: Account, reason: str) -> SwitchOutcome:
        """Log the account out so the list and later switches see it, then route to login."""
        await self.store.mark_logged_out(account.key, reason, _SOURCE)
        return self._finish(SwitchState.REAUTH_REQUIRED, account, reason=reason)

    async def switch(self, account_id: str) -> SwitchOutcome:
        """Make ``account_id`` (storage key or bare id) the active identity, validating it first."""
        account_id = str(account_id)
        self.state = SwitchState.IDLE
        switched = False
        previous_key: Optional[str] = None
        previous_last_active: Optional[int] = None
        target: Optional[Account] = None

        try:
            previous_key = await self.store.active_key()
            target = await self.store.get(account_id)
            if target is None:
                return self._finish(SwitchState.FAILED, account_id=account_id, reason="Account not found")
            if target.key == previous_key:
                return self._finish(SwitchState.SWITCHED, target)
            if not target.is_logged_in:
                return self._finish(
                    SwitchState.REAUTH_REQUIRED, target, reason="Account is logged out"
                )
            if not target.access_token:
                return await self._require_reauth(target, "No stored credential")

            self.state = SwitchState.VALIDATING
            if not await self._validate(target):
                if not is_refresh_token_plausible(
                    target.refresh_token, self.min_refresh_token_length
                ):
                    return await self._require_reauth(
                        target, "Token invalid/expired during account switch"
                    )
                logger.info(
                    "Token for %s invalid but refresh token present, proceeding", target.key
                )

            previous_last_active = target.last_active_at
            await self.store.switch(target.key)
            switched = True

            active = await self.store.get_active()
            token_email = email_from_token(active.access_token if active else None)
            if (
                token_email
                and target.email
                and token_email.strip().lower() != target.email.strip().lower()
            ):
                mismatch = TokenMismatch(f"Token for account {target.key} belongs to another identity")
                logger.error("%s: %s", mismatch.code, mismatch)
                await self.store.revert_switch(previous_key, target.key, previous_last_active)
                switched = False
                await self.store.mark_logged_out(target.key, str(mismatch), _SOURCE)
                return self._finish(
                    SwitchState.REAUTH_REQUIRED, target, reason="Session mismatch, please log in again"
                )

            return self._finish(SwitchState.SWITCHED, target)

        except AccountLoggedOut:
            # Logged out by another task (e.g. a refresh sweep) while validating.
            logger.warning("Account %s was logged out during the switch", account_id)
            return self._finish(
                SwitchState.REAUTH_REQUIRED, target, account_id, reason="Account is logged out"
            )
        except Exception as exc:
            logger.error("Switch to %s failed: %s", account_id, exc)
            if switched:
                try:
                    await self.store.revert_switch(previous_key, target.key, previous_last_active)
                except Exception as revert_exc:
                    logger.error("Could not revert switch to %s: %s", account_id, revert_exc)
            return self._finish(SwitchState.FAILED, account_id=account_id, reason=GENERIC_FAILURE)
