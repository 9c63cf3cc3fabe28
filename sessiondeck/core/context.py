"""SessionContext: the one owner of the store, key, client and flows.

Built once from config and injected into the API app and the CLI, so
there is no module-level state and tests can build isolated instances.
"""

import logging
import uuid
from typing import Optional

import httpx

from sessiondeck.config import SessionConfig
from sessiondeck.core.cipher import FileKeyStore, MemoryKeyStore, TokenCipher
from sessiondeck.core.client import ApiClient
from sessiondeck.core.database import DEVICE_ID_KEY, Database
from sessiondeck.core.login import LoginManager
from sessiondeck.core.migration import LegacyMigration
from sessiondeck.core.refresh import SessionRefreshScheduler
from sessiondeck.core.store import CredentialStore
from sessiondeck.core.switch import AccountSwitcher, FailOpenPolicy

logger = logging.getLogger("sessiondeck.context")


def get_or_create_device_id(db: Database) -> str:
    """Return this install's device id, creating it on first use.

    >>> db = Database(":memory:")
    >>> get_or_create_device_id(db) == get_or_create_device_id(db)
    True
    """
    device_id = db.get_setting(DEVICE_ID_KEY)
    if device_id:
        return device_id
    device_id = str(uuid.uuid4())
    db.set_setting(DEVICE_ID_KEY, device_id)
    logger.info("Generated new device id")
    return device_id


class SessionContext:
    def __init__(
        self,
        config: SessionConfig,
        db: Database,
        keystore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.db = db
        self.cipher = TokenCipher(keystore, allow_legacy_plaintext=config.allow_legacy_plaintext)
        self.store = CredentialStore(
            db,
            self.cipher,
            max_accounts=config.max_accounts,
            min_refresh_token_length=config.min_refresh_token_length,
        )
        self.device_id = get_or_create_device_id(db)
        self.client = ApiClient(config, self.device_id, transport=transport)
        self.scheduler = SessionRefreshScheduler(
            self.store,
            self.client,
            buffer_minutes=config.refresh_buffer_minutes,
            min_refresh_token_length=config.min_refresh_token_length,
        )
        self.switcher = AccountSwitcher(
            self.store,
            self.client,
            policy=FailOpenPolicy(
                enabled=config.fail_open_validation,
                max_consecutive=config.fail_open_max_attempts,
            ),
            min_refresh_token_length=config.min_refresh_token_length,
        )
        self.login = LoginManager(
            self.store, self.client, ttl_seconds=config.challenge_ttl_seconds
        )
        self.migration = LegacyMigration(self.store, config.legacy_path)

    @classmethod
    def from_config(
        cls,
        config: SessionConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SessionContext":
        """Context backed by files under ``config.data_dir``."""
        return cls(
            config,
            Database(config.db_path),
            FileKeyStore(config.key_path),
            transport=transport,
        )

    @classmethod
    def in_memory(
        cls,
        config: Optional[SessionConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SessionContext":
        """Context with an in-memory database and key. Nothing is persisted.

        >>> ctx = SessionContext.in_memory()
        >>> ctx.db.db_path
        ':memory:'
        """
        return cls(
            config or SessionConfig(),
            Database(":memory:"),
            MemoryKeyStore(),
            transport=transport,
        )

    def close(self) -> None:
        self.db.close()
