"""
Request dependencies: the engine and the caller's identity.

Identity comes from a bearer token passed through a pluggable resolver
(``app.state.identity_resolver``). The default resolver verifies a JWT
signed with ``EngineConfig.jwt_secret`` and returns its ``sub`` claim.
``token_as_user_id`` trusts the token as the user id and is only for tests
and local development.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from bidroom.core.engine import AuctionEngine
from bidroom.utils.logger import get_logger
from bidroom.utils.validation import validate_identifier

logger = get_logger("api.auth")

security = HTTPBearer(auto_error=False)

# token -> user id, or None if the token is not valid
IdentityResolver = Callable[[str], Optional[str]]


class JWTIdentityResolver:
    """Verify a signed JWT and return its subject."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def __call__(self, token: str) -> Optional[str]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug(f"Rejected token: {e}")
            return None

        user_id = payload.get("sub")
        ok, _ = validate_identifier(user_id, "sub")
        return user_id if ok else None

    def issue(self, user_id: str, expires_in: timedelta = timedelta(hours=1)) -> str:
        """Sign a token for user_id (CLI and tests)."""
        claims = {"sub": user_id, "exp": datetime.now(timezone.utc) + expires_in}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)


def token_as_user_id(token: str) -> Optional[str]:
    """Development resolver: the token is the user id. Never use in production."""
    ok, _ = validate_identifier(token, "token")
    return token if ok else None


def resolve_identity(app_state, token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    resolver: IdentityResolver = app_state.identity_resolver
    return resolver(token)


async def current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    user_id = resolve_identity(request.app.state, credentials.credentials)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


def get_engine(request: Request) -> AuctionEngine:
    return request.app.state.engine
