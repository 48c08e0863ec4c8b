from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from bookswap.config import settings

ALGORITHM = "HS256"


def create_access_token(data: dict[str, object]) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str, token_type: str = "access") -> dict[str, object] | None:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        if payload.get("type") != token_type:
            return None
        return payload
    except JWTError:
        return None


def user_id_from_token(token: str) -> int | None:
    payload = verify_token(token)
    if not payload:
        return None

    subject = payload.get("sub")
    if not isinstance(subject, (str, int)):
        return None

    try:
        return int(subject)
    except (ValueError, TypeError):
        return None
