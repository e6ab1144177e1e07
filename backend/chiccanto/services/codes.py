from __future__ import annotations

import logging
import secrets

from chiccanto.core.errors import ApiError
from chiccanto.services.kv_store import KVStore, dumps_json

logger = logging.getLogger(__name__)

# No 0/O or 1/I.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_CODE_ATTEMPTS = 12

CARD_KEY_PREFIXES: dict[str, str] = {
    "men-novice1": "CC-MEN-STD1",
    "men-novice-birthday1": "CC-MEN-BDAY1",
    "women-novice1": "CC-WOM-STD1",
    "women-novice-birthday1": "CC-WOM-BDAY1",
    "men-advanced1": "CC-MEN-ADV1",
    "women-advanced1": "CC-WOM-ADV1",
}
DEFAULT_CARD_KEY_PREFIX = "CC-CARD"

SKU_PREFIXES: dict[str, str] = {
    "single": "CC-S",
    "four": "CC-F",
}


class CodeGenerationError(ApiError):
    status_code = 500
    error = "Could not generate a new code. Try again."


def activation_key(code: str) -> str:
    return f"ac:{code}"


def normalize_code(raw: object) -> str:
    return str(raw or "").strip().upper()


def random_chars(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def card_key_prefix(card_key: str, prefixes: dict[str, str] | None = None) -> str:
    table = CARD_KEY_PREFIXES if prefixes is None else prefixes
    return table.get((card_key or "").strip(), DEFAULT_CARD_KEY_PREFIX)


def card_key_code(prefix: str) -> str:
    return f"{prefix}-{random_chars(8)}"


def sku_code(prefix: str) -> str:
    groups = [random_chars(4) for _ in range(4)]
    return "-".join([prefix, *groups])


def reserve_unique_code(
    store: KVStore,
    make_code,
    record: dict,
    *,
    attempts: int = DEFAULT_CODE_ATTEMPTS,
) -> str:
    """Write ``record`` under a fresh ``ac:<code>`` key and return the code.

    Each candidate is checked against the store and then claimed with an
    insert-if-absent write; ``CodeGenerationError`` once ``attempts`` run out.
    """
    for attempt in range(max(1, attempts)):
        code = make_code()
        key = activation_key(code)
        if store.get(key) is not None:
            logger.info("codes.collision attempt=%s", attempt + 1)
            continue
        if store.compare_and_set(key, None, dumps_json({**record, "code": code})):
            return code
        logger.info("codes.collision attempt=%s", attempt + 1)
    logger.warning("codes.exhausted attempts=%s", attempts)
    raise CodeGenerationError()
