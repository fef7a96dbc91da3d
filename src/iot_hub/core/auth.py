from datetime import timedelta
from typing import Any, Dict, Optional
import jwt
from pydantic import BaseModel, ConfigDict

from ..utils.exceptions import AuthenticationError
from ..utils.helpers import utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)


class Identity(BaseModel):
    """Authenticated user behind a live subscriber"""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    username: str
    role: str = "user"


class TokenAuthenticator:
    """
    Issues and verifies the bearer tokens dashboard clients present.

    Only verification is used by the realtime hub; issuing is exposed for
    the login flow and for tooling.
    """
    def __init__(self, config: Dict[str, Any]):
        self.secret = config['secret']
        self.algorithm = config.get('algorithm', 'HS256')
        self.expires_in = int(config.get('expires_in', 24 * 3600))

    def issue_token(self, identity: Identity, expires_in: Optional[int] = None) -> str:
        now = utcnow()
        payload = {
            "id": identity.user_id,
            "username": identity.username,
            "role": identity.role,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in if expires_in is not None else self.expires_in),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Identity:
        if not token:
            raise AuthenticationError("Authentication required", reason="missing")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.debug(f"Token verification failed: {e}")
            raise AuthenticationError("Invalid or expired token", reason="invalid")

        username = claims.get("username")
        if not username:
            raise AuthenticationError("Invalid or expired token", reason="invalid")
        user_id = claims.get("id")
        return Identity(
            user_id=str(user_id) if user_id is not None else None,
            username=username,
            role=claims.get("role", "user"),
        )
