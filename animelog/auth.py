# animelog/auth.py
from datetime import datetime, timedelta, timezone
import logging

from jose import JWTError, jwt
from werkzeug.security import check_password_hash, generate_password_hash

from animelog.service import AuthError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(days=7)

class CredentialService:
    """
    Password hashing and bearer tokens.
    Tokens are HS256 JWTs whose subject is the user id.
    """

    def __init__(self, secret_key: str, token_ttl: timedelta = DEFAULT_TOKEN_TTL,
                 hash_method: str = "scrypt"):
        if not secret_key:
            raise ValueError("secret_key required")
        self.secret_key = secret_key
        self.token_ttl = token_ttl
        self.hash_method = hash_method

    def hash(self, password: str) -> str:
        return generate_password_hash(password, method=self.hash_method)

    def verify(self, password: str, credential: str) -> bool:
        if not credential:
            return False
        return check_password_hash(credential, password)

    def issue_token(self, user_id: int) -> str:
        now = datetime.now(timezone.utc)
        claims = {"sub": str(user_id), "iat": now, "exp": now + self.token_ttl}
        return jwt.encode(claims, self.secret_key, algorithm=ALGORITHM)

    def resolve_token(self, token: str) -> int:
        """Return the user id carried by token or raise AuthError."""
        if not token:
            raise AuthError("no token provided")
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except JWTError as e:
            logger.warning("resolve_token: rejected token (%s)", e)
            raise AuthError("invalid token") from e
        sub = payload.get("sub")
        try:
            return int(sub)
        except (TypeError, ValueError):
            raise AuthError("invalid token")
