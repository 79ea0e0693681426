import datetime as dt
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError

from trainai.config import config
from trainai.errors import AuthError

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str


class AuthService:
    """
    Verifies bearer tokens issued by the identity provider.

    Only the ``sub`` claim is used; it becomes the owner id that namespaces
    every stored object.
    """

    @staticmethod
    def _make_jwt(sub: str, scope: str, ttl: dt.timedelta) -> str:
        now = dt.datetime.now(dt.timezone.utc)
        payload = {
            "iss": "trainai-auth",
            "sub": sub,
            "scope": scope,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)

    @classmethod
    def mint_access(cls, user_id: str) -> str:
        return cls._make_jwt(user_id, "access", dt.timedelta(minutes=config.ACCESS_TTL_MIN))

    @classmethod
    def verify_token(cls, token: str) -> CurrentUser:
        try:
            payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
        except JWTError:
            raise AuthError("Unauthorized")

        user_id = payload.get("sub")
        if not user_id or payload.get("scope", "access") != "access":
            raise AuthError("Unauthorized")

        # the owner id is used as a storage namespace
        if "/" in str(user_id) or str(user_id) in (".", ".."):
            raise AuthError("Unauthorized")

        return CurrentUser(id=str(user_id))

    @classmethod
    async def get_current_user(
        cls,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    ) -> CurrentUser:
        if credentials is None or not credentials.credentials:
            raise AuthError("Unauthorized")

        return cls.verify_token(credentials.credentials)
