"""JWT bearer tokens: issue and validate."""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from market_data_hub.realtime.exceptions import AuthError
from market_data_hub.realtime.protocols import AuthenticatedUser


class JwtAuthValidator:
    """AuthValidator over HMAC-signed JWTs.

    The user id is read from `sub`, or from `userId` for tokens issued by the
    older API.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    def validate_token(self, token: str) -> AuthenticatedUser:
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            raise AuthError(f"Invalid token: {exc}") from exc
        user_id = payload.get("sub") or payload.get("userId")
        if not user_id:
            raise AuthError("Token has no subject")
        return AuthenticatedUser(user_id=str(user_id))

    def create_access_token(
        self,
        user_id: str,
        expires_in: timedelta = timedelta(hours=1),
        extra_data: dict[str, Any] | None = None,
    ) -> str:
        """Create a signed access token (used by tests and the stream client)."""
        payload = {
            "sub": user_id,
            "exp": datetime.now(timezone.utc) + expires_in,
            "type": "access",
            **(extra_data or {}),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
