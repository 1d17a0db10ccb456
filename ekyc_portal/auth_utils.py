from datetime import datetime, timedelta, timezone
from typing import Optional

from passlib.context import CryptContext
from jose import JWTError, jwt

from .config import settings

# Password hashing context
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def get_password_hash(password: str) -> str:
    """
    Hashes a password using the configured password context (argon2).
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verifies a plain password against a stored hash.
    """
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # Malformed or unknown hash format
        return False


# -------------------------
# JWT Utilities
# -------------------------
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None,
                        secret_key: Optional[str] = None) -> str:
    """
    Create JWT access token.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key or settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token_full(token: str, secret_key: Optional[str] = None) -> Optional[dict]:
    """
    Decode JWT access token and return the full payload.
    Returns dict with keys: sub (user id), email, exp (expiration timestamp).
    Returns None if token is invalid or expired.
    """
    try:
        return jwt.decode(token, secret_key or settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
