"""One-time-passcode login, add-account and re-auth flows.

A PendingChallenge is held in memory per email between ``start`` (code sent)
and ``verify`` (code checked, account stored). Challenges expire after a
TTL and are purged lazily whenever the manager is touched.
"""

import logging
import time
from typing import Callable, Optional

from pydantic import BaseModel

from sessiondeck.core.client import ApiClient
from sessiondeck.core.database import Account
from sessiondeck.core.store import AccountInput, CredentialStore
from sessiondeck.errors import ChallengeExpired

logger = logging.getLogger("sessiondeck.login")

FLOWS = frozenset({"login", "add_account", "reauth"})
DEFAULT_CHALLENGE_TTL = 600


def normalize_email(email: str) -> str:
    """
    >>> normalize_email("  Someone@Example.COM ")
    'someone@example.com'
    """
    return (email or "").strip().lower()


class PendingChallenge(BaseModel):
    flow: str
    email: str
    expires_at: float
    account_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        """
        >>> PendingChallenge(flow="login", email="a@b.co", expires_at=10).is_expired(10)
        True
        """
        return now >= self.expires_at


class LoginManager:
    def __init__(
        self,
        store: CredentialStore,
        client: ApiClient,
        *,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._challenges: dict[str, PendingChallenge] = {}

    def _purge_expired(self) -> None:
        now = self._clock()
        for email in [e for e, c in self._challenges.items() if c.is_expired(now)]:
            del self._challenges[email]

    def pending(self, email: str) -> Optional[PendingChallenge]:
        """The live challenge for ``email``, if any."""
        self._purge_expired()
        return self._challenges.get(normalize_email(email))

    async def start(
        self, email: str, flow: str = "login", account_id: Optional[str] = None
    ) -> PendingChallenge:
        """Send a passcode and register a challenge, replacing any earlier one."""
        email = normalize_email(email)
        if not email or "@" not in email:
            raise ValueError("A valid email address is required")
        if flow not in FLOWS:
            raise ValueError(f"Unknown login flow: {flow!r}")

        self._purge_expired()
        await self.client.start_login(email)

        challenge = PendingChallenge(
            flow=flow,
            email=email,
            expires_at=self._clock() + self.ttl_seconds,
            account_id=account_id,
        )
        self._challenges[email] = challenge
        logger.info("Passcode sent for %s flow", flow)
        return challenge

    async def reauth(self, account: Account) -> PendingChallenge:
        """Start a re-auth challenge pre-filled with the account's email."""
        if not account.email:
            raise ValueError(f"Account {account.id} has no email to re-authenticate with")
        return await self.start(account.email, "reauth", account_id=account.key)

    async def verify(self, email: str, code: str) -> Account:
        """Check a passcode and store the resulting account as active.

        Raises ChallengeExpired with no live challenge; CapacityExceeded
        propagates from the store and leaves the challenge in place.
        """
        email = normalize_email(email)
        if self.pending(email) is None:
            raise ChallengeExpired(f"No pending code for {email}, request a new one")
        code = (code or "").strip()
        if not code:
            raise ValueError("Passcode is required")

        result = await self.client.verify_login(email, code)
        user = result["user"]
        session = result["session"]
        access_token = session["accessToken"]

        fields = {
            "id": user["id"],
            "kind": user.get("type") or "member",
            "handle": user.get("username"),
            "email": normalize_email(user.get("email") or email),
            "display_name": user.get("name"),
            "avatar_url": user.get("avatar") or user.get("profile_picture"),
            "access_token": access_token,
            "refresh_token": session.get("refreshToken"),
            "is_logged_in": True,
        }

        profile = await self.client.get_profile(fields["email"], access_token)
        if profile:
            fields["display_name"] = profile.get("name") or fields["display_name"]
            fields["avatar_url"] = (
                profile.get("profile_picture") or profile.get("avatar") or fields["avatar_url"]
            )
            fields["handle"] = profile.get("username") or fields["handle"]

        account = await self.store.add(AccountInput(**fields))
        self._challenges.pop(email, None)
        logger.info("Account %s signed in", account.id)
        return account
