"""Configuration for sessiondeck, loaded from SESSIONDECK_* environment variables."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from sessiondeck import MAX_ACCOUNTS

ENV_PREFIX = "SESSIONDECK_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _default_data_dir() -> Path:
    """Return default data directory: ~/.sessiondeck"""
    return Path.home() / ".sessiondeck"


def _parse_bool(name: str, raw: str) -> bool:
    """Parse a boolean environment value.

    >>> _parse_bool("X", "Yes")
    True
    >>> _parse_bool("X", "0")
    False
    """
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


class SessionConfig(BaseModel):
    """Settings for the credential store, refresh sweep and network client.

    >>> cfg = SessionConfig(data_dir=Path("/tmp/sd"))
    >>> cfg.db_path.name
    'sessiondeck.db'
    >>> cfg.max_accounts
    5
    """

    api_base_url: str = "http://localhost:5000"
    data_dir: Path = Field(default_factory=_default_data_dir)
    max_accounts: int = Field(default=MAX_ACCOUNTS, ge=1)
    refresh_buffer_minutes: int = Field(default=10, ge=0)

    # Network timeouts (seconds)
    validate_timeout: float = Field(default=15.0, gt=0)
    refresh_timeout: float = Field(default=15.0, gt=0)
    profile_timeout: float = Field(default=10.0, gt=0)
    login_timeout: float = Field(default=15.0, gt=0)

    # Validation policy: network errors count as valid for a bounded number
    # of consecutive attempts per account, then fail closed.
    fail_open_validation: bool = True
    fail_open_max_attempts: int = Field(default=3, ge=1)

    min_refresh_token_length: int = Field(default=20, ge=1)
    allow_legacy_plaintext: bool = True
    challenge_ttl_seconds: int = Field(default=600, gt=0)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "sessiondeck.db"

    @property
    def key_path(self) -> Path:
        return self.data_dir / ".account_key"

    @property
    def legacy_path(self) -> Path:
        return self.data_dir / "legacy_session.json"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "SessionConfig":
        """Build config from environment variables.

        Unset variables keep their defaults. Raises ValueError on bad values.

        >>> SessionConfig.from_env({"SESSIONDECK_MAX_ACCOUNTS": "3"}).max_accounts
        3
        >>> SessionConfig.from_env({"SESSIONDECK_FAIL_OPEN_VALIDATION": "off"}).fail_open_validation
        False
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        for field_name, field in cls.model_fields.items():
            raw = env.get(ENV_PREFIX + field_name.upper())
            if raw is None or raw == "":
                continue
            if field.annotation is bool:
                values[field_name] = _parse_bool(field_name.upper(), raw)
            elif field.annotation is Path:
                values[field_name] = Path(raw).expanduser()
            else:
                values[field_name] = raw

        return cls(**values)
