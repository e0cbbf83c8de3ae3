"""Identity provider and password hashing.

The vault trusts whatever user id the provider resolves; nothing downstream
re-checks credentials.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from loguru import logger

from .config import get_settings
from .errors import Unauthorized

PBKDF2_ITERATIONS = 240_000


@dataclass(frozen=True)
class Identity:
    user_id: Optional[int]
    authenticated: bool


ANONYMOUS = Identity(user_id=None, authenticated=False)


class IdentityProvider:
    """Issues and verifies signed bearer tokens.

    The secret is fixed at construction time for the life of the provider.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", token_ttl: timedelta = timedelta(hours=24)):
        if not secret:
            raise ValueError("A signing secret is required")
        self._secret = secret
        self._algorithm = algorithm
        self._token_ttl = token_ttl

    def issue_token(self, user_id: int, email: str) -> str:
        claims = {
            "user_id": user_id,
            "email": email,
            "exp": datetime.now(timezone.utc) + self._token_ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def resolve(self, token: Optional[str]) -> Identity:
        if not token:
            return ANONYMOUS
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as e:
            logger.debug(f"Rejected bearer token: {e}")
            return ANONYMOUS

        user_id = claims.get("user_id")
        if not isinstance(user_id, int):
            return ANONYMOUS
        return Identity(user_id=user_id, authenticated=True)


@lru_cache
def get_identity_provider() -> IdentityProvider:
    settings = get_settings()
    return IdentityProvider(
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        token_ttl=timedelta(minutes=settings.token_ttl_minutes),
    )


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> int:
    identity = provider.resolve(credentials.credentials if credentials else None)
    if not identity.authenticated:
        raise Unauthorized("Missing or invalid bearer token.")
    return identity.user_id


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        scheme, iterations, salt, expected = hashed_password.split("$")
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)
