"""Error taxonomy for the credential and session subsystem.

Only capacity failures and switch-time validation failures are meant to reach
the user. Everything else is swallowed into ``None``/``False`` by the layer
that raises it, and the worst case is always "treat identity as logged out".
"""


class SessionDeckError(Exception):
    """Base class for all sessiondeck errors."""

    code = "SESSIONDECK_ERROR"


class CapacityExceeded(SessionDeckError):
    """``add()`` would create a new account beyond the configured maximum.

    >>> str(CapacityExceeded(5))
    'Maximum 5 accounts allowed'
    """

    code = "CAPACITY_EXCEEDED"

    def __init__(self, max_accounts: int):
        self.max_accounts = max_accounts
        super().__init__(f"Maximum {max_accounts} accounts allowed")


class AccountNotFound(SessionDeckError):
    code = "NOT_FOUND"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"No account with id={account_id}")


class AccountLoggedOut(SessionDeckError, ValueError):
    """The account is logged out and must re-authenticate before use."""

    code = "LOGGED_OUT"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__("This account is logged out. Please log in again.")


class DecryptionCorrupted(SessionDeckError):
    """Ciphertext present but unreadable. Never forwarded as a credential."""

    code = "DECRYPTION_CORRUPTED"


class NetworkUnavailable(SessionDeckError):
    """Timeout, connection failure or 5xx: the outcome is indeterminate."""

    code = "NETWORK_UNAVAILABLE"


class AuthRejected(SessionDeckError):
    """The server answered 401/403 for this credential."""

    code = "AUTH_REJECTED"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TokenMismatch(SessionDeckError):
    """The active token belongs to a different identity than the stored one."""

    code = "TOKEN_MISMATCH"


class ChallengeExpired(SessionDeckError):
    """No live one-time-passcode challenge for this email."""

    code = "CHALLENGE_EXPIRED"
