from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from ..config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, SECRET_KEY
from .error_handlers import UnauthorizedError, get_error_message


def create_access_token(data: dict, expires_minutes: int | None = None) -> str:
    """Sign a token. Real tokens come from the identity provider; this is for tooling and tests."""
    to_encode = data.copy()
    minutes = ACCESS_TOKEN_EXPIRE_MINUTES if expires_minutes is None else expires_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise UnauthorizedError(get_error_message("session_invalid")) from e
