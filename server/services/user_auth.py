"""Session verification and realtime subscription tokens."""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Iterable, List

from jose import jwt, JWTError

from core.config import Settings
from constants import NODE_CHANNELS, EXECUTIONS_TOPIC, STATUS_TOPIC, user_channel

logger = logging.getLogger(__name__)

REALTIME_TOKEN_TYPE = "realtime"


class UserAuthService:
    """Verifies identity-provider session tokens and mints realtime tokens.

    Sessions are issued elsewhere; this service only trusts their signature.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._algorithm = settings.jwt_algorithm

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify a session JWT. Returns None if invalid, expired or not a session."""
        try:
            payload = jwt.decode(token, self.settings.jwt_secret_key, algorithms=[self._algorithm])
        except JWTError as e:
            logger.debug(f"Token verification failed: {e}")
            return None
        if payload.get("type") == REALTIME_TOKEN_TYPE or not payload.get("sub"):
            return None
        return payload

    def create_session_token(self, user_id: str, expires_minutes: int = 60) -> str:
        """Issue a session token. Used by tests and local tooling."""
        now = datetime.now(timezone.utc)
        payload = {"sub": str(user_id), "iat": now, "exp": now + timedelta(minutes=expires_minutes)}
        return jwt.encode(payload, self.settings.jwt_secret_key, algorithm=self._algorithm)

    # =========================================================================
    # Realtime tokens
    # =========================================================================

    def create_realtime_token(self, user_id: str,
                              channels: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Mint a short-lived token scoped to one user and a set of channels.

        Unknown channel names are dropped. The user's own execution channel is
        always included.
        """
        requested = set(channels) if channels else set(NODE_CHANNELS)
        allowed: List[str] = sorted(requested & NODE_CHANNELS)
        allowed.append(user_channel(user_id))

        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.settings.realtime_token_ttl)
        payload = {
            "sub": str(user_id),
            "type": REALTIME_TOKEN_TYPE,
            "channels": allowed,
            "topics": [STATUS_TOPIC, EXECUTIONS_TOPIC],
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.settings.jwt_secret_key, algorithm=self._algorithm)
        return {"token": token, "channels": allowed, "expiresAt": expires_at.isoformat()}

    def verify_realtime_token(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            payload = jwt.decode(token, self.settings.jwt_secret_key, algorithms=[self._algorithm])
        except JWTError as e:
            logger.debug(f"Realtime token rejected: {e}")
            return None
        if payload.get("type") != REALTIME_TOKEN_TYPE:
            return None
        return payload
