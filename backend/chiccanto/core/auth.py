import secrets

from fastapi import Request

from chiccanto.core.errors import MisconfiguredError, UnauthorizedError
from chiccanto.core.security import SESSION_COOKIE_NAME, verify_session_token
from chiccanto.core.settings import settings

SHARED_SECRET_HEADER = "x-fulfill-key"


def require_session_secret() -> str:
    if not settings.fulfill_session_secret:
        raise MisconfiguredError("FULFILL_SESSION_SECRET")
    return settings.fulfill_session_secret


def require_fulfill_key() -> str:
    if not settings.fulfill_key:
        raise MisconfiguredError("FULFILL_KEY")
    return settings.fulfill_key


def check_password(password: str) -> bool:
    expected = require_fulfill_key()
    supplied = (password or "").strip()
    if not supplied:
        return False
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def has_valid_session(request: Request) -> bool:
    secret = require_session_secret()
    return verify_session_token(request.cookies.get(SESSION_COOKIE_NAME), secret)


def _has_shared_secret(request: Request) -> bool:
    expected = settings.fulfill_shared_secret
    if not expected:
        return False
    supplied = (request.headers.get(SHARED_SECRET_HEADER) or "").strip()
    if not supplied:
        return False
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def require_fulfillment_access(request: Request) -> None:
    if _has_shared_secret(request):
        return
    if has_valid_session(request):
        return
    raise UnauthorizedError()
