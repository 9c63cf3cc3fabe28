"""Credential store: durable accounts plus the active-account pointer.

Tokens are encrypted by the TokenCipher before they reach the database and
decrypted on the way out. A token that cannot be decrypted is returned as
None, so callers see "no credential" rather than garbage.

All mutations are serialized by one asyncio.Lock per store instance, and
each one is a per-row write, so a badge update can no longer overwrite a
concurrent token refresh.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Union

from pydantic import BaseModel, Field, field_validator

from sessiondeck import MAX_ACCOUNTS
from sessiondeck.core.cipher import TokenCipher
from sessiondeck.core.database import Account, Database
from sessiondeck.core.tokens import MIN_REFRESH_TOKEN_LENGTH
from sessiondeck.errors import AccountLoggedOut, AccountNotFound

logger = logging.getLogger("sessiondeck.store")

_TOKEN_FIELDS = ("access_token", "refresh_token")
_LOGIN_CLEARS = {"logged_out_at": None, "logout_reason": None, "logout_source": None}


class AccountInput(BaseModel):
    """Fields accepted by ``CredentialStore.add``.

    Only fields that are explicitly set are merged into an existing account.

    >>> AccountInput(id=42, email="a@test.com").id
    '42'
    """

    id: str
    kind: str = "member"
    handle: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    is_logged_in: bool = True
    unread_count: int = Field(default=0, ge=0)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if value is None or str(value).strip() == "":
            raise ValueError("account id is required")
        return str(value)


def _now_ms() -> int:
    return int(time.time() * 1000)


class CredentialStore:
    """Accounts table + active pointer, with tokens encrypted at rest."""

    def __init__(
        self,
        db: Database,
        cipher: TokenCipher,
        *,
        max_accounts: int = MAX_ACCOUNTS,
        min_refresh_token_length: int = MIN_REFRESH_TOKEN_LENGTH,
        clock: Callable[[], int] = _now_ms,
    ):
        self.db = db
        self.cipher = cipher
        self.max_accounts = max_accounts
        self.min_refresh_token_length = min_refresh_token_length
        self._clock = clock
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reads
    #
    # Accounts are addressed by storage key ("<kind>_<id>") or by bare id;
    # a bare id shared by two kinds resolves to the oldest account.
    # ------------------------------------------------------------------

    def _to_account(self, row: dict) -> Account:
        data = dict(row)
        data.pop("key", None)
        for field in _TOKEN_FIELDS:
            data[field] = self.cipher.decrypt(data.get(field))
        return Account(**data)

    async def list_accounts(self) -> list[Account]:
        """All stored accounts, tokens decrypted."""
        return [self._to_account(row) for row in self.db.list_accounts()]

    async def get(self, ref: str) -> Optional[Account]:
        row = self.db.get_account(str(ref))
        return self._to_account(row) if row else None

    async def active_key(self) -> Optional[str]:
        """Storage key of the active account, or None if empty or dangling."""
        key = self.db.get_active_id()
        if key is None:
            return None
        row = self.db.get_account(key)
        if row is None:
            logger.warning("Active pointer references missing account %s", key)
            return None
        return row["key"]

    async def active_id(self) -> Optional[str]:
        """Bare id of the active account, or None."""
        key = await self.active_key()
        if key is None:
            return None
        return self.db.get_account(key)["id"]

    async def get_active(self) -> Optional[Account]:
        key = self.db.get_active_id()
        if key is None:
            return None
        return await self.get(key)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, data: Union[AccountInput, dict]) -> Account:
        """Insert or merge an account and make it active.

        Identity is (kind, id): the same id under another kind is a new
        account. Raises CapacityExceeded for a new identity once
        ``max_accounts`` exist.
        """
        if isinstance(data, dict):
            data = AccountInput(**data)

        fields = data.model_dump(exclude_unset=True, exclude={"id", "kind"})
        fields.setdefault("is_logged_in", True)
        if fields["is_logged_in"]:
            fields.update(_LOGIN_CLEARS)

        refresh_token = fields.get("refresh_token")
        if "refresh_token" in fields and (
            not refresh_token or len(refresh_token) < self.min_refresh_token_length
        ):
            logger.warning(
                "Account %s stored with missing or short refresh token (length %d)",
                data.id,
                len(refresh_token or ""),
            )

        for field in _TOKEN_FIELDS:
            if field in fields:
                fields[field] = self.cipher.encrypt(fields[field])
        fields["last_active_at"] = self._clock()

        async with self._lock:
            row = self.db.upsert_account(
                data.id,
                fields,
                kind=data.kind,
                max_accounts=self.max_accounts,
                activate=True,
            )
        logger.info("Stored account %s and made it active", row.get("key"))
        return self._to_account(row)

    async def update(self, ref: str, **changes) -> bool:
        """Merge ``changes`` into one account.

        Token fields are re-encrypted. Setting ``is_logged_in=True`` clears
        the logout bookkeeping. Unknown field names raise ValueError.
        Returns False (and logs) when the account is unknown.

        >>> import asyncio
        >>> from sessiondeck.core.cipher import MemoryKeyStore
        >>> store = CredentialStore(Database(":memory:"), TokenCipher(MemoryKeyStore()))
        >>> asyncio.run(store.update("ghost", unread_count=1))
        False
        """
        if "unread_count" in changes and changes["unread_count"] < 0:
            raise ValueError("unread_count must be >= 0")
        if changes.get("is_logged_in") is True:
            for field, value in _LOGIN_CLEARS.items():
                changes.setdefault(field, value)
        for field in _TOKEN_FIELDS:
            if field in changes:
                changes[field] = self.cipher.encrypt(changes[field])

        async with self._lock:
            updated = self.db.update_account(str(ref), **changes)
        if not updated and changes:
            logger.warning("%s: update ignored for account %s", AccountNotFound.code, ref)
        return updated

    async def switch(self, ref: str) -> Account:
        """Stamp ``last_active_at`` and point the active pointer here.

        Raises AccountNotFound for an unknown account and AccountLoggedOut
        for a logged-out one. The check and the write share one lock.
        """
        ref = str(ref)
        async with self._lock:
            row = self.db.get_account(ref)
            if row is None:
                raise AccountNotFound(ref)
            if not row["is_logged_in"]:
                raise AccountLoggedOut(row["key"])
            self.db.activate_account(row["key"], self._clock())
            row = self.db.get_account(row["key"])
        logger.info("Switched active account to %s", row["key"])
        return self._to_account(row)

    async def revert_switch(
        self,
        previous: Optional[str],
        ref: str,
        last_active_at: Optional[int],
    ) -> None:
        """Undo a ``switch``: restore the old pointer and ``last_active_at``."""
        async with self._lock:
            self.db.update_account(str(ref), last_active_at=last_active_at)
            previous_row = self.db.get_account(previous) if previous is not None else None
            previous_key = previous_row["key"] if previous_row else None
            self.db.set_active_id(previous_key)
        logger.info("Reverted switch to %s (active is now %s)", ref, previous_key)

    async def remove(self, ref: str) -> bool:
        """Delete an account, reassigning or clearing the pointer if it was active."""
        async with self._lock:
            deleted, active_key = self.db.delete_account(str(ref))
        if not deleted:
            logger.warning("%s: remove ignored for account %s", AccountNotFound.code, ref)
            return False
        logger.info("Removed account %s (active is now %s)", ref, active_key)
        return True

    async def mark_logged_out(self, ref: str, reason: str, source: str = "unknown") -> bool:
        """Flip ``is_logged_in`` off and record why.

        Returns False if the account is unknown or already logged out.
        """
        ref = str(ref)
        async with self._lock:
            row = self.db.get_account(ref)
            if row is None:
                logger.warning("%s: cannot log out account %s", AccountNotFound.code, ref)
                return False
            if not row["is_logged_in"]:
                return False
            self.db.update_account(
                row["key"],
                is_logged_in=False,
                logged_out_at=self._clock(),
                logout_reason=reason,
                logout_source=source,
            )
        logger.warning("Account %s marked logged out: %s (%s)", row["key"], reason, source)
        return True

    async def update_unread_count(self, ref: str, count: int) -> bool:
        return await self.update(ref, unread_count=count)

    async def logout_current(self) -> Optional[Account]:
        """Log out the active account and move to the next logged-in one.

        Returns the account that became active, or None when no logged-in
        account is left (the pointer then stays on the logged-out account).
        """
        active_key = await self.active_key()
        if active_key is None:
            return None

        await self.mark_logged_out(active_key, "User logged out", "logout_current")

        candidates = [
            row
            for row in self.db.list_accounts()
            if row["key"] != active_key and row["is_logged_in"]
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda row: row.get("last_active_at") or 0, reverse=True)
        return await self.switch(candidates[0]["key"])

    async def clear_all(self) -> int:
        """Delete every account, clear the pointer and destroy the key."""
        async with self._lock:
            count = self.db.delete_all_accounts()
            self.cipher.destroy_key()
        logger.warning("Cleared %d accounts and destroyed the encryption key", count)
        return count
