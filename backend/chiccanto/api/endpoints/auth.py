from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response

from chiccanto.core.auth import check_password, has_valid_session, require_fulfill_key, require_session_secret
from chiccanto.core.errors import UnauthorizedError
from chiccanto.core.security import build_cleared_session_cookie, build_session_cookie, issue_session_token
from chiccanto.core.settings import settings
from chiccanto.schemas.activation import LoginRequest

logger = logging.getLogger(__name__)


def _require_auth_config() -> None:
    require_fulfill_key()
    require_session_secret()


router = APIRouter(dependencies=[Depends(_require_auth_config)])


@router.get("/auth")
async def auth_status(request: Request) -> dict:
    return {"ok": True, "authenticated": has_valid_session(request)}


@router.post("/auth")
async def login(body: LoginRequest, response: Response) -> dict:
    if not check_password(body.password or ""):
        logger.info("auth.login.rejected")
        raise UnauthorizedError()

    ttl_s = settings.fulfill_session_ttl_s
    token = issue_session_token(require_session_secret(), ttl_s)
    response.headers["Set-Cookie"] = build_session_cookie(token, ttl_s)
    logger.info("auth.login.ok ttl_s=%s", ttl_s)
    return {"ok": True}


@router.delete("/auth")
async def logout(response: Response) -> dict:
    response.headers["Set-Cookie"] = build_cleared_session_cookie()
    return {"ok": True}
