from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt
from passlib.context import CryptContext

from ftth_inventory.config import get_settings

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class InvalidOrExpired(Exception):
    """Any token problem. Deliberately carries no reason."""


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def _secret_for(token_type: str) -> str:
    settings = get_settings()
    return settings.refresh_secret_key if token_type == REFRESH else settings.secret_key


def _issue(user_id: int, token_type: str, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    iat = int(now.timestamp())
    payload = {
        "sub": str(user_id),
        "iat": iat,
        "exp": iat + int(lifetime.total_seconds()),
        "jti": uuid4().hex,
        "type": token_type,
    }
    return jwt.encode(payload, _secret_for(token_type), algorithm=ALGORITHM)


def issue_access_token(user_id: int) -> str:
    minutes = get_settings().access_token_expire_minutes
    return _issue(user_id, ACCESS, timedelta(minutes=minutes))


def issue_refresh_token(user_id: int) -> str:
    days = get_settings().refresh_token_expire_days
    return _issue(user_id, REFRESH, timedelta(days=days))


def verify(token: str, token_type: str = ACCESS) -> dict[str, Any]:
    try:
        claims = jwt.decode(token, _secret_for(token_type), algorithms=[ALGORITHM])
    except JWTError as e:
        raise InvalidOrExpired() from e

    if claims.get("type") != token_type:
        raise InvalidOrExpired()
    sub = claims.get("sub")
    if not sub or not str(sub).isdigit():
        raise InvalidOrExpired()
    return claims


def user_id_from(token: str, token_type: str = ACCESS) -> int:
    return int(verify(token, token_type)["sub"])
