import time
from typing import Optional

from fastapi import Header, HTTPException
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

TOKEN_MAX_AGE_HOURS = 2


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().csrf_secret, salt="ledger-csrf")


def generate_csrf_token() -> str:
    return _serializer().dumps({"iat": int(time.time())})


def validate_csrf_token(token: Optional[str], max_age_hours: int = TOKEN_MAX_AGE_HOURS) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        # SignatureExpired is a BadSignature too
        return False
    return isinstance(data, dict) and "iat" in data


def require_csrf(x_csrf_token: Optional[str] = Header(default=None)) -> None:
    """Dependency for every mutating route."""
    if not validate_csrf_token(x_csrf_token):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")
