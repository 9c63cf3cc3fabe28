"""One-shot import of the legacy single-account session file.

Before multi-account support, a device held one identity in
``legacy_session.json``::

    {
      "auth_token": "...",
      "refresh_token": "...",          # optional
      "user_data": {"id": ..., "type": ..., "username": ..., "email": ...,
                    "name": ..., "profile_picture": ...}
    }

On startup the file is imported as the first account and deleted. The
import is a no-op once any account exists, so a crash between import and
delete can never produce a duplicate.
"""

import json
import logging
from pathlib import Path

from sessiondeck.core.store import AccountInput, CredentialStore

logger = logging.getLogger("sessiondeck.migration")


def _safe_remove(path: Path):
    """Remove a file, ignoring errors."""
    try:
        path.unlink()
    except OSError:
        pass


class LegacyMigration:
    def __init__(self, store: CredentialStore, legacy_path: Path):
        self.store = store
        self.legacy_path = Path(legacy_path)

    async def run(self) -> bool:
        """Import the legacy record if the store is empty.

        Returns True if an account was imported.
        """
        if self.store.db.count_accounts() > 0:
            return False

        path = self.legacy_path
        if path.is_symlink():
            logger.warning("Refusing to read legacy session: path is a symlink")
            return False
        if not path.exists():
            return False

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read legacy session file: %s", exc)
            return False

        if not isinstance(data, dict):
            logger.warning("Legacy session file is not an object, removing")
            _safe_remove(path)
            return False

        token = data.get("auth_token")
        user = data.get("user_data")
        if not token or not isinstance(user, dict) or user.get("id") in (None, ""):
            logger.warning("Legacy session file is incomplete, removing")
            _safe_remove(path)
            return False

        fields = {
            "id": user["id"],
            "kind": user.get("type") or "member",
            "handle": user.get("username"),
            "email": user.get("email"),
            "display_name": user.get("name"),
            "avatar_url": user.get("profile_picture") or user.get("profilePicture"),
            "access_token": token,
            "is_logged_in": True,
        }
        if data.get("refresh_token"):
            fields["refresh_token"] = data["refresh_token"]

        try:
            account = await self.store.add(AccountInput(**fields))
        except Exception as exc:
            logger.error("Failed to import legacy session: %s", exc)
            return False

        _safe_remove(path)
        logger.info("Migrated legacy session to account %s", account.id)
        return True
