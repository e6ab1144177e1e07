from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from chiccanto.core.errors import BadRequestError, ConflictError, NotFoundError
from chiccanto.services.cards import load_card, sanitize_card_for_client, setup_key_matches, update_card
from chiccanto.services.kv_store import KVStore, get_kv_store

router = APIRouter()


def _setup_param(request: Request) -> str:
    params = request.query_params
    return (params.get("setup") or params.get("setup_key") or params.get("setupKey") or "").strip()


def _clean_token(token: str) -> str:
    token = (token or "").strip()
    if not token:
        raise BadRequestError("Missing token.")
    return token


@router.get("/token/{token}")
async def get_card(token: str, request: Request, store: KVStore = Depends(get_kv_store)) -> dict:
    token = _clean_token(token)
    card = load_card(store, token)
    if card is None:
        raise NotFoundError()
    include_setup_key = setup_key_matches(card, _setup_param(request))
    return sanitize_card_for_client(card, token, include_setup_key=include_setup_key)


@router.put("/token/{token}")
async def put_card(
    token: str,
    request: Request,
    body: dict[str, Any] = Body(...),
    store: KVStore = Depends(get_kv_store),
) -> dict:
    token = _clean_token(token)
    if body.get("token") and str(body["token"]) != token:
        raise ConflictError("Token mismatch.")

    setup_key = _setup_param(request) or str(body.get("setup_key") or "")
    card = update_card(store, token, body, setup_key=setup_key)
    return sanitize_card_for_client(card, token, include_setup_key=False)
