"""Session state and request auth headers for the ParcelBook client."""

from __future__ import annotations

import logging
from typing import Optional, TYPE_CHECKING

from .schemas import User, UserRole

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from .config import Settings


class AuthSession:
    """Signed-in user and tokens, held explicitly instead of in a global store."""

    def __init__(
        self,
        user: Optional[User] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        self.user = user
        self.access_token = access_token
        self.refresh_token = refresh_token

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None and bool(self.access_token)

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.role == UserRole.ADMIN

    def sign_in(self, user: User, access_token: str, refresh_token: Optional[str]) -> None:
        self.user = user
        self.access_token = access_token
        self.refresh_token = refresh_token
        logger.info("session_signed_in", extra={"user_id": user.id, "role": user.role.value})

    def update_access_token(self, access_token: str) -> None:
        self.access_token = access_token

    def clear(self) -> None:
        if self.user is not None:
            logger.info("session_cleared", extra={"user_id": self.user.id})
        self.user = None
        self.access_token = None
        self.refresh_token = None


class ClientAuth:
    """Builds backend request headers from the current session."""

    def __init__(self, settings: Settings, session: AuthSession) -> None:
        self.settings = settings
        self.session = session

    def get_headers(self, request_id: str) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-Request-Id": request_id,
        }
        # Free ngrok tunnels serve an interstitial page unless told not to
        if "ngrok" in self.settings.api_base_url:
            headers["ngrok-skip-browser-warning"] = "true"
        token = (self.session.access_token or "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers
