"""Bearer-token guard for the operational endpoints of the proxy host."""

from __future__ import annotations

import secrets

from fastapi import Header, HTTPException

from coldstart.config import Settings
from coldstart.core.logging import get_logger

logger = get_logger(__name__)


class AdminTokenGuard:
    """FastAPI dependency checking ``Authorization: Bearer <COLDSTART_ADMIN_TOKEN>``.

    Without a configured token the admin endpoints stay closed (503) instead
    of open.
    """

    def __init__(self, settings: Settings) -> None:
        self._token = settings.admin_token.strip().encode()
        if not self._token:
            logger.warning(
                "COLDSTART_ADMIN_TOKEN is not set; admin endpoints are disabled"
            )

    @property
    def enabled(self) -> bool:
        return bool(self._token)

    @staticmethod
    def _bearer_credentials(authorization: str | None) -> str | None:
        scheme, _, credentials = (authorization or "").strip().partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            return None
        return credentials.strip()

    async def __call__(
        self,
        authorization: str | None = Header(default=None, alias="Authorization"),
    ) -> None:
        if not self.enabled:
            raise HTTPException(status_code=503, detail="Admin endpoints are disabled")
        credentials = self._bearer_credentials(authorization)
        if credentials is None:
            raise HTTPException(
                status_code=401,
                detail="Bearer token required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not secrets.compare_digest(credentials.encode(), self._token):
            raise HTTPException(status_code=403, detail="Admin token rejected")
