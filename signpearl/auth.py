import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request
from jose import JWTError, jwt

from signpearl.config import Settings
from signpearl.errors import Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: Optional[str] = None


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip() or None
    return None


def decode_access_token(token: str, settings: Settings) -> CurrentUser:
    options = {"verify_aud": bool(settings.jwt_audience)}
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience or None,
            options=options,
        )
    except JWTError as exc:
        raise Unauthenticated(context=f"token rejected: {exc}") from exc
    subject = payload.get("sub")
    if not subject:
        raise Unauthenticated(context="token has no subject")
    return CurrentUser(id=str(subject), email=payload.get("email"))


def get_current_user(request: Request, authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    token = _extract_bearer_token(authorization)
    if token is None:
        raise Unauthenticated(context="missing bearer token")
    return decode_access_token(token, request.app.state.settings)
