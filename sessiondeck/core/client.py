"""HTTP client for the auth endpoints the session layer depends on.

One ``httpx.AsyncClient`` per call, each with an explicit timeout. Status
handling:
- 200 -> parsed payload
- 401/403 -> AuthRejected (the credential is definitively bad)
- timeout, connection failure, 5xx -> NetworkUnavailable (indeterminate)
"""

import logging
from typing import Optional

import httpx

from sessiondeck.config import SessionConfig
from sessiondeck.errors import AuthRejected, NetworkUnavailable

logger = logging.getLogger("sessiondeck.client")

VALIDATE_PATH = "/auth/validate-token"
REFRESH_PATH = "/auth/v2/refresh"
PROFILE_PATH = "/auth/get-user-profile"
LOGIN_START_PATH = "/auth/v2/send-otp"
LOGIN_VERIFY_PATH = "/auth/v2/verify-otp"
LOGOUT_PATH = "/auth/v2/logout"


def _error_message(resp: httpx.Response) -> str:
    """Pull a server error message out of a JSON error body, if any."""
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return f"HTTP {resp.status_code}"


def _json_object(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        raise NetworkUnavailable(f"Malformed JSON from {resp.request.url.path}")
    if not isinstance(data, dict):
        raise NetworkUnavailable(f"Unexpected payload from {resp.request.url.path}")
    return data


class ApiClient:
    """Auth API client bound to one device id.

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: SessionConfig,
        device_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.device_id = device_id
        self._transport = transport

    async def _post(
        self,
        path: str,
        payload: dict,
        *,
        timeout: float,
        token: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with httpx.AsyncClient(
                base_url=self.config.api_base_url,
                timeout=timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(path, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning("Timeout calling %s", path)
            raise NetworkUnavailable(f"Timeout calling {path}")
        except httpx.TransportError as exc:
            logger.warning("Network error calling %s: %s", path, exc)
            raise NetworkUnavailable(f"Network error calling {path}: {exc}")

        if resp.status_code >= 500:
            logger.warning("Server error %d from %s", resp.status_code, path)
            raise NetworkUnavailable(f"Server error ({resp.status_code}) from {path}")
        return resp

    async def validate(self, access_token: str) -> bool:
        """Ask the server whether an access token is still valid.

        True only for an explicit ``{"valid": true}``. 401/403 and explicit
        invalid bodies return False. Raises NetworkUnavailable when the
        answer is indeterminate.
        """
        resp = await self._post(
            VALIDATE_PATH,
            {},
            timeout=self.config.validate_timeout,
            token=access_token,
        )
        if resp.status_code in (401, 403):
            logger.info("Token rejected by validate endpoint (HTTP %d)", resp.status_code)
            return False
        if resp.status_code != 200:
            logger.info("Validate endpoint answered HTTP %d", resp.status_code)
            return False
        try:
            data = resp.json()
        except ValueError:
            return False
        return isinstance(data, dict) and data.get("valid") is True

    async def refresh(self, refresh_token: str) -> dict:
        """Exchange a refresh token for new tokens.

        Returns ``{"access_token", "refresh_token", "expires_at"}``; the
        refresh token is None when the server did not rotate it.
        """
        resp = await self._post(
            REFRESH_PATH,
            {"refreshToken": refresh_token, "deviceId": self.device_id},
            timeout=self.config.refresh_timeout,
        )

        if resp.status_code in (401, 403):
            raise AuthRejected(
                f"Refresh rejected (HTTP {resp.status_code})", resp.status_code
            )
        if resp.status_code == 400:
            message = _error_message(resp)
            lowered = message.lower()
            if "invalid" in lowered or "expired" in lowered:
                raise AuthRejected(f"Refresh rejected: {message}", 400)
            raise NetworkUnavailable(f"Refresh failed: {message}")
        if resp.status_code != 200:
            raise NetworkUnavailable(f"Unexpected HTTP {resp.status_code} during refresh")

        data = _json_object(resp)
        access_token = data.get("accessToken")
        if not access_token:
            raise NetworkUnavailable("Refresh response missing accessToken")
        return {
            "access_token": access_token,
            "refresh_token": data.get("refreshToken") or None,
            "expires_at": data.get("expiresAt"),
        }

    async def get_profile(self, email: str, access_token: str) -> Optional[dict]:
        """Fetch a profile. Best effort: any failure returns None."""
        try:
            resp = await self._post(
                PROFILE_PATH,
                {"email": email},
                timeout=self.config.profile_timeout,
                token=access_token,
            )
        except NetworkUnavailable as exc:
            logger.warning("Profile fetch failed: %s", exc)
            return None

        if resp.status_code != 200:
            logger.warning("Profile fetch HTTP %d", resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        # Some deployments wrap the profile in {"profile": {...}}
        profile = data.get("profile", data)
        return profile if isinstance(profile, dict) else None

    async def start_login(self, email: str) -> dict:
        """Trigger a one-time passcode email."""
        resp = await self._post(
            LOGIN_START_PATH,
            {"email": email},
            timeout=self.config.login_timeout,
        )
        if resp.status_code in (401, 403):
            raise AuthRejected(_error_message(resp), resp.status_code)
        if resp.status_code != 200:
            raise ValueError(f"Failed to send code: {_error_message(resp)}")
        return _json_object(resp)

    async def verify_login(self, email: str, code: str) -> dict:
        """Exchange a passcode for ``{"user": {...}, "session": {...}}``."""
        resp = await self._post(
            LOGIN_VERIFY_PATH,
            {"email": email, "token": code, "deviceId": self.device_id},
            timeout=self.config.login_timeout,
        )
        if resp.status_code in (401, 403):
            raise AuthRejected(_error_message(resp), resp.status_code)
        if resp.status_code != 200:
            raise ValueError(f"Failed to verify code: {_error_message(resp)}")

        data = _json_object(resp)
        user = data.get("user")
        session = data.get("session")
        if not isinstance(user, dict) or not isinstance(session, dict):
            raise ValueError("Verification succeeded but no session was returned")
        if user.get("id") is None or not session.get("accessToken"):
            raise ValueError("Verification response is missing user id or access token")
        return {"user": user, "session": session}

    async def logout(self, account_id: str, kind: str) -> bool:
        """Tell the server to drop this device's session. Failures are ignored."""
        try:
            resp = await self._post(
                LOGOUT_PATH,
                {"userId": account_id, "userType": kind, "deviceId": self.device_id},
                timeout=self.config.login_timeout,
            )
        except NetworkUnavailable as exc:
            logger.warning("Logout API error (continuing anyway): %s", exc)
            return False
        if resp.status_code != 200:
            logger.warning("Logout API answered HTTP %d (continuing anyway)", resp.status_code)
            return False
        return True
