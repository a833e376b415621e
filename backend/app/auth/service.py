"""JWT bearer token service.

Tokens carry the user id in ``sub`` plus ``iat``/``exp``. Verification
checks the signature and expiry only; resolving the user record is the
caller's job (the socket handshake and the REST dependency both do it
against the store).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from app.errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenService:
    """Issues and verifies HS256 access tokens."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expire_minutes: int = 60 * 24 * 7,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._expire_minutes = expire_minutes

    def issue(
        self,
        user_id: str,
        expires_delta: Optional[timedelta] = None,
        extra_claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self._expire_minutes))
        claims: Dict[str, Any] = {
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int(expire.timestamp()),
        }
        if extra_claims:
            claims.update(extra_claims)
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: Any) -> str:
        """Return the user id carried by a valid token.

        Raises:
            AuthenticationError: Missing, malformed, badly signed or expired
                token, or no ``sub`` claim.
        """
        if not isinstance(token, str) or not token.strip():
            raise AuthenticationError("Token is required")
        token = token.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError as exc:
            raise AuthenticationError("Token has expired") from exc
        except JWTError as exc:
            raise AuthenticationError("Invalid token") from exc

        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Token has no subject")
        return str(user_id)
