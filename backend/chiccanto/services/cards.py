from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any

from chiccanto.core.errors import ApiError, ConflictError, NotFoundError
from chiccanto.core.security import b64url_encode
from chiccanto.services.kv_store import KVStore, loads_json

logger = logging.getLogger(__name__)

DEFAULT_FIELDS = 9
MAX_FIELDS = 9
MAX_CHOICE_LEN = 64
MAX_REVEAL_AMOUNT = 1_000_000
MAX_BOARD_TILE_LEN = 16
MAX_SCRATCH_INDEX = 100
TOKEN_ATTEMPTS = 8

LOCKED_FIELDS = ("choice", "reveal_amount")


class SetupKeyRequiredError(ApiError):
    status_code = 403
    error = "Setup key required."
    error_code = "SETUP_KEY_REQUIRED"


class CardLockedError(ConflictError):
    error = "Card is already configured."
    error_code = "CARD_LOCKED"


class CardCorruptError(ApiError):
    status_code = 500
    error = "Corrupt card record."


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def make_token() -> str:
    raw = secrets.token_hex(6)
    return f"{raw[:8]}-{raw[8:]}"


def make_setup_key() -> str:
    return b64url_encode(secrets.token_bytes(16))


def new_unique_token(store: KVStore) -> str:
    for _ in range(TOKEN_ATTEMPTS):
        token = make_token()
        if store.get(token) is None:
            return token
    raise ApiError("Could not allocate a card token. Try again.")


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_init(init: Any) -> dict[str, Any]:
    obj = init if isinstance(init, dict) else {}
    fields = obj.get("fields")
    if not (_is_int(fields) and 1 <= fields <= MAX_FIELDS):
        fields = DEFAULT_FIELDS
    return {
        "product_id": _clean_str(obj.get("product_id")),
        "theme_id": _clean_str(obj.get("theme_id")),
        "card_key": _clean_str(obj.get("card_key")),
        "fields": fields,
    }


def build_new_card(init: Any, *, token: str, setup_key: str | None = None) -> dict[str, Any]:
    n = normalize_init(init)
    return {
        "token": token,
        "created_at": utcnow_iso(),
        "product_id": n["product_id"],
        "theme_id": n["theme_id"],
        "card_key": n["card_key"],
        "setup_key": setup_key or make_setup_key(),
        "configured": False,
        "choice": None,
        "reveal_amount": None,
        "revealed": False,
        "revealed_at": None,
        "fields": n["fields"],
        "board": None,
        "scratched_indices": None,
        "scratched_fields": None,
    }


def mint_card(store: KVStore, init: Any) -> dict[str, Any]:
    card = build_new_card(init, token=new_unique_token(store))
    store.put_json(card["token"], card)
    return card


def load_card(store: KVStore, token: str) -> dict[str, Any] | None:
    raw = store.get(token)
    if raw is None:
        return None
    card = loads_json(raw)
    if not isinstance(card, dict):
        raise CardCorruptError()
    return card


def setup_key_matches(card: dict[str, Any], supplied: str | None) -> bool:
    expected = card.get("setup_key")
    supplied = (supplied or "").strip()
    if not expected or not supplied:
        return False
    return secrets.compare_digest(str(expected).encode("utf-8"), supplied.encode("utf-8"))


def sanitize_card_for_client(card: dict[str, Any], token: str, *, include_setup_key: bool = False) -> dict[str, Any]:
    out = dict(card) if isinstance(card, dict) else {}
    out["token"] = token
    if not include_setup_key:
        out.pop("setup_key", None)
    return out


def _valid_choice(value: Any) -> bool:
    return isinstance(value, str) and 0 < len(value) <= MAX_CHOICE_LEN


def _parse_reveal_amount(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if not (0 <= n <= MAX_REVEAL_AMOUNT):
        return None
    return int(n) if n.is_integer() else n


def _valid_board(value: Any) -> bool:
    return (
        isinstance(value, list)
        and 0 < len(value) <= MAX_FIELDS
        and all(isinstance(v, str) and len(v) <= MAX_BOARD_TILE_LEN for v in value)
    )


def _valid_indices(value: Any) -> bool:
    return isinstance(value, list) and all(_is_int(v) and 0 <= v < MAX_SCRATCH_INDEX for v in value)


def _proposed_sender_values(existing: dict[str, Any], body: dict[str, Any]) -> dict[str, Any]:
    proposed: dict[str, Any] = {}
    if "configured" in body:
        proposed["configured"] = bool(body["configured"])
    if "choice" in body:
        value = body["choice"]
        if value is None:
            proposed["choice"] = None
        elif _valid_choice(value):
            proposed["choice"] = value
    if "reveal_amount" in body:
        value = body["reveal_amount"]
        if value is None:
            proposed["reveal_amount"] = None
        else:
            n = _parse_reveal_amount(value)
            if n is not None:
                proposed["reveal_amount"] = n
    if "fields" in body:
        value = body["fields"]
        if _is_int(value) and 1 <= value <= MAX_FIELDS:
            proposed["fields"] = value
    return {k: v for k, v in proposed.items() if existing.get(k) != v}


def apply_card_update(existing: dict[str, Any], body: dict[str, Any], *, setup_ok: bool) -> dict[str, Any]:
    """Merge the allowlisted fields of ``body`` into a copy of ``existing``.

    Sender fields only change with the setup key. Once a card is configured its
    prize outcome is fixed. Invalid recipient values leave the stored value.
    """
    nxt = dict(existing)

    changes = _proposed_sender_values(existing, body)
    if changes:
        if not setup_ok:
            raise SetupKeyRequiredError()
        if existing.get("configured"):
            if any(k in changes for k in LOCKED_FIELDS) or changes.get("configured") is False:
                raise CardLockedError()
        nxt.update(changes)

    if body.get("revealed"):
        nxt["revealed"] = True

    if "revealed_at" in body:
        value = body["revealed_at"]
        nxt["revealed_at"] = None if value is None else str(value)

    if "board" in body:
        value = body["board"]
        if value is None:
            nxt["board"] = None
        elif _valid_board(value):
            nxt["board"] = value

    if "scratched_indices" in body:
        value = body["scratched_indices"]
        if value is None:
            nxt["scratched_indices"] = None
        elif _valid_indices(value):
            nxt["scratched_indices"] = value

    if "scratched_fields" in body:
        nxt["scratched_fields"] = body["scratched_fields"]

    return nxt


def update_card(store: KVStore, token: str, body: dict[str, Any], *, setup_key: str | None) -> dict[str, Any]:
    existing = load_card(store, token)
    if existing is None:
        raise NotFoundError()
    nxt = apply_card_update(existing, body, setup_ok=setup_key_matches(existing, setup_key))
    nxt["token"] = token
    store.put_json(token, nxt)
    if nxt.get("configured") and not existing.get("configured"):
        logger.info("cards.configured token=%s", token)
    if nxt.get("revealed") and not existing.get("revealed"):
        logger.info("cards.revealed token=%s", token)
    return nxt
