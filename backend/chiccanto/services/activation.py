from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from chiccanto.core.errors import ApiError, BadRequestError, ConflictError, NotFoundError
from chiccanto.core.settings import Settings
from chiccanto.services import codes as codes_mod
from chiccanto.services.cards import mint_card, utcnow_iso
from chiccanto.services.kv_store import KVStore, dumps_json, loads_json

logger = logging.getLogger(__name__)

STATUS_AVAILABLE = "available"
STATUS_ASSIGNED = "assigned"
STATUS_REDEEMED = "redeemed"

SCHEME_CARD_KEY = "card_key"
SCHEME_SKU = "sku"

ORDER_MERGE_ATTEMPTS = 3
MAX_ISSUE_COUNT = 500


class CodeNotFoundError(NotFoundError):
    error = "Activation code not found."


class CodeUnavailableError(ConflictError):
    error = "This activation code has not been assigned yet."
    error_code = "NOT_ASSIGNED"


class RedeemInProgressError(ConflictError):
    error = "This activation code is being activated. Try again."
    error_code = "IN_PROGRESS"


class CorruptRecordError(ApiError):
    status_code = 500
    error = "Corrupt activation record."


@dataclass
class RegistryConfig:
    code_scheme: str = SCHEME_CARD_KEY
    allowed_quantities: frozenset[int] = frozenset({1, 4})
    sku_card_counts: dict[str, int] = field(default_factory=lambda: {"single": 1, "four": 4})
    card_key_prefixes: dict[str, str] = field(default_factory=lambda: dict(codes_mod.CARD_KEY_PREFIXES))
    sku_prefixes: dict[str, str] = field(default_factory=lambda: dict(codes_mod.SKU_PREFIXES))
    code_attempts: int = codes_mod.DEFAULT_CODE_ATTEMPTS
    allow_direct_redeem: bool = False
    support_email: str = "chiccanto@wearrs.com"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RegistryConfig":
        scheme = settings.code_scheme if settings.code_scheme in {SCHEME_CARD_KEY, SCHEME_SKU} else SCHEME_CARD_KEY
        return cls(
            code_scheme=scheme,
            allow_direct_redeem=settings.allow_direct_redeem,
            support_email=settings.support_email,
        )


@dataclass
class AssignmentResult:
    order_id: str
    key_field: str
    key: str
    quantity: int
    codes: list[str]
    existing: bool
    buyer_name: str | None = None


@dataclass
class RedeemResult:
    code: str
    cards: list[dict[str, Any]]
    existing: bool


def order_index_key(order_id: str) -> str:
    return f"order:{order_id}"


def order_assignment_key(order_id: str, key: str, quantity: int) -> str:
    return f"order:{order_id}:{key}:{quantity}"


def _as_int(raw: Any) -> int | None:
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    try:
        return int(str(raw if raw is not None else "").strip())
    except ValueError:
        return None


def _merge_unique(current: Any, additions: list[str]) -> list[str]:
    out = [str(v) for v in current] if isinstance(current, list) else []
    for v in additions:
        if v not in out:
            out.append(v)
    return out


def build_buyer_message(codes: list[str], origin: str, buyer_name: str | None = None, support_email: str = "") -> str:
    base = f"{(origin or '').rstrip('/')}/"
    name = (buyer_name or "").strip()
    greeting = f"Hi {name},\n\n" if name else ""

    listed = [c for c in codes if c]
    if len(listed) <= 1:
        lines = [f"Your activation code: {listed[0] if listed else ''}"]
    else:
        lines = [f"Your {len(listed)} activation codes (one per card):"]
        lines += [f"Card {i}: {c}" for i, c in enumerate(listed, start=1)]

    return (
        f"{greeting}Thanks for your order, and welcome to ChicCanto.\n\n"
        + "\n".join(lines)
        + "\n\nHow to use it:\n"
        + f"1) Open: {base}\n"
        + "2) Paste your activation code and follow the steps on screen\n\n"
        + "This is quick, private, and works on both phone and desktop. "
        + "If you ever need to access it again, just use the same code.\n\n"
        + f"Need help?\nFAQ: {base}faq/\nSupport: {support_email}"
    )


class ActivationRegistry:
    """Issues activation codes for orders and redeems them into cards.

    Records live in the injected store: ``ac:<code>`` for codes,
    ``order:<order_id>`` and ``order:<order_id>:<key>:<quantity>`` for orders,
    ``<token>`` for cards. Status moves ``available -> assigned -> redeemed``
    and every transition is a ``compare_and_set`` on the code record.
    """

    def __init__(self, store: KVStore, config: RegistryConfig | None = None) -> None:
        self.store = store
        self.config = config or RegistryConfig()

    def normalize_quantity(self, raw: Any) -> int:
        n = _as_int(raw)
        return n if n in self.config.allowed_quantities else 1

    def _resolve_key(self, card_key: str | None, sku: str | None) -> tuple[str, str]:
        card_key = (card_key or "").strip()
        sku = (sku or "").strip().lower()
        if card_key:
            return SCHEME_CARD_KEY, card_key
        if sku:
            if sku not in self.config.sku_card_counts:
                raise BadRequestError("Unknown sku.")
            return SCHEME_SKU, sku
        raise BadRequestError(f"Missing {self.config.code_scheme}.")

    def _code_factory(self, scheme: str, key: str):
        if scheme == SCHEME_SKU:
            prefix = self.config.sku_prefixes.get(key, "CC-S")
            return lambda: codes_mod.sku_code(prefix)
        prefix = codes_mod.card_key_prefix(key, self.config.card_key_prefixes)
        return lambda: codes_mod.card_key_code(prefix)

    def _existing_assignment(self, order_id: str, key_field: str, key: str, quantity: int) -> dict | None:
        order = self.store.get_json(order_assignment_key(order_id, key, quantity))
        if isinstance(order, dict) and order.get("codes"):
            return order

        # Records written before the composite key existed only have the plain index.
        legacy = self.store.get_json(order_index_key(order_id))
        if (
            isinstance(legacy, dict)
            and str(legacy.get(key_field) or "") == key
            and _as_int(legacy.get("quantity")) == quantity
            and isinstance(legacy.get("codes"), list)
            and len(legacy["codes"]) == quantity
        ):
            return legacy
        return None

    def assign(
        self,
        *,
        order_id: str,
        card_key: str | None = None,
        sku: str | None = None,
        quantity: Any = 1,
        buyer_name: str | None = None,
    ) -> AssignmentResult:
        order_id = str(order_id or "").strip()
        if not order_id:
            raise BadRequestError("Missing order_id.")
        scheme, key = self._resolve_key(card_key, sku)
        key_field = SCHEME_CARD_KEY if scheme == SCHEME_CARD_KEY else SCHEME_SKU
        qty = self.normalize_quantity(quantity)
        buyer_name = (buyer_name or "").strip() or None

        existing = self._existing_assignment(order_id, key_field, key, qty)
        if existing is not None:
            logger.info("activation.assign.existing order_id=%s key=%s quantity=%s", order_id, key, qty)
            return AssignmentResult(
                order_id=order_id,
                key_field=key_field,
                key=key,
                quantity=qty,
                codes=[str(c) for c in existing["codes"]],
                existing=True,
                buyer_name=buyer_name or existing.get("buyer_name"),
            )

        composite_key = order_assignment_key(order_id, key, qty)
        make_code = self._code_factory(scheme, key)
        assigned_at = utcnow_iso()
        codes: list[str] = []
        for i in range(qty):
            record = {
                "sku": key if scheme == SCHEME_SKU else "single",
                "card_key": key if scheme == SCHEME_CARD_KEY else None,
                "status": STATUS_ASSIGNED,
                "order_id": order_id,
                "order_key": composite_key,
                "buyer_name": buyer_name,
                "assigned_at": assigned_at,
                "redeemed_at": None,
                "bundle_index": (i + 1) if qty > 1 else None,
                "init": {"card_key": key} if scheme == SCHEME_CARD_KEY else {},
                "tokens": [],
            }
            try:
                codes.append(
                    codes_mod.reserve_unique_code(self.store, make_code, record, attempts=self.config.code_attempts)
                )
            except codes_mod.CodeGenerationError:
                self._release_codes(codes)
                raise

        order_rec = {
            "order_id": order_id,
            key_field: key,
            "quantity": qty,
            "codes": codes,
            "buyer_name": buyer_name,
            "assigned_at": assigned_at,
            "tokens": [],
            "redeemed_codes": [],
        }
        if not self.store.compare_and_set(composite_key, None, dumps_json(order_rec)):
            # A concurrent request claimed this assignment first.
            self._release_codes(codes)
            winner = self._existing_assignment(order_id, key_field, key, qty)
            if winner is None:
                raise ConflictError("Assignment in progress. Try again.")
            return AssignmentResult(
                order_id=order_id,
                key_field=key_field,
                key=key,
                quantity=qty,
                codes=[str(c) for c in winner["codes"]],
                existing=True,
                buyer_name=buyer_name or winner.get("buyer_name"),
            )

        self._merge_order_index(order_id, order_rec)
        logger.info("activation.assign.created order_id=%s key=%s quantity=%s", order_id, key, qty)
        return AssignmentResult(
            order_id=order_id,
            key_field=key_field,
            key=key,
            quantity=qty,
            codes=codes,
            existing=False,
            buyer_name=buyer_name,
        )

    def _release_codes(self, codes: list[str]) -> None:
        for code in codes:
            self.store.delete(codes_mod.activation_key(code))

    def _merge_order_index(self, order_id: str, order_rec: dict) -> None:
        key = order_index_key(order_id)
        for _ in range(ORDER_MERGE_ATTEMPTS):
            raw = self.store.get(key)
            prev = loads_json(raw)
            merged = dict(order_rec)
            if isinstance(prev, dict):
                merged["codes"] = _merge_unique(prev.get("codes"), order_rec["codes"])
                merged["tokens"] = _merge_unique(prev.get("tokens"), [])
                merged["redeemed_codes"] = _merge_unique(prev.get("redeemed_codes"), [])
            if self.store.compare_and_set(key, raw, dumps_json(merged)):
                return
        logger.warning("activation.order_index.contended order_id=%s", order_id)

    def issue(self, *, sku: str, count: int = 1) -> list[str]:
        """Mint unbound stock codes in ``available`` status."""
        _scheme, key = self._resolve_key(None, sku)
        try:
            count = int(count)
        except (TypeError, ValueError):
            raise BadRequestError("Invalid count.")
        if count < 1 or count > MAX_ISSUE_COUNT:
            raise BadRequestError(f"count must be between 1 and {MAX_ISSUE_COUNT}.")

        make_code = self._code_factory(SCHEME_SKU, key)
        issued_at = utcnow_iso()
        codes: list[str] = []
        for _ in range(count):
            record = {
                "sku": key,
                "card_key": None,
                "status": STATUS_AVAILABLE,
                "order_id": None,
                "buyer_name": None,
                "issued_at": issued_at,
                "assigned_at": None,
                "redeemed_at": None,
                "init": {},
                "tokens": [],
            }
            codes.append(
                codes_mod.reserve_unique_code(self.store, make_code, record, attempts=self.config.code_attempts)
            )
        logger.info("activation.issue sku=%s count=%s", key, count)
        return codes

    def _card_count(self, rec: dict) -> int:
        if rec.get("card_key"):
            return 1
        return max(1, int(self.config.sku_card_counts.get(str(rec.get("sku") or ""), 1)))

    def _load_cards(self, tokens: Any) -> list[dict[str, Any]]:
        cards: list[dict[str, Any]] = []
        for token in tokens if isinstance(tokens, list) else []:
            card = self.store.get_json(str(token))
            if isinstance(card, dict):
                cards.append(card)
        return cards

    def _read_code(self, key: str) -> tuple[str | None, dict | None]:
        raw = self.store.get(key)
        if raw is None:
            return None, None
        rec = loads_json(raw)
        if not isinstance(rec, dict):
            raise CorruptRecordError()
        return raw, rec

    def redeem(self, code: Any, init: Any = None) -> RedeemResult:
        code = codes_mod.normalize_code(code)
        if not code:
            raise BadRequestError("Missing activation code.", error_code="INVALID_CODE")

        key = codes_mod.activation_key(code)
        raw, rec = self._read_code(key)
        if rec is None:
            logger.info("activation.redeem.unknown")
            raise CodeNotFoundError()

        status = rec.get("status")
        if status == STATUS_REDEEMED:
            cards = self._load_cards(rec.get("tokens"))
            if cards:
                return RedeemResult(code=code, cards=cards, existing=True)
            logger.warning("activation.redeem.cards_missing code=%s", code)
        elif status == STATUS_AVAILABLE:
            if not self.config.allow_direct_redeem:
                raise CodeUnavailableError()
        elif status != STATUS_ASSIGNED:
            raise CorruptRecordError()

        card_init = dict(init) if isinstance(init, dict) else {}
        stored_init = rec.get("init") if isinstance(rec.get("init"), dict) else {}
        card_init.update({k: v for k, v in stored_init.items() if v is not None})

        minted = [mint_card(self.store, card_init) for _ in range(self._card_count(rec))]
        tokens = [c["token"] for c in minted]

        updated = dict(rec)
        updated["status"] = STATUS_REDEEMED
        updated["redeemed_at"] = utcnow_iso()
        updated["tokens"] = tokens
        if not self.store.compare_and_set(key, raw, dumps_json(updated)):
            for token in tokens:
                self.store.delete(token)
            _raw, winner = self._read_code(key)
            cards = self._load_cards((winner or {}).get("tokens"))
            if winner and winner.get("status") == STATUS_REDEEMED and cards:
                logger.info("activation.redeem.lost_race code=%s", code)
                return RedeemResult(code=code, cards=cards, existing=True)
            raise RedeemInProgressError()

        self._merge_tokens_into_orders(updated, code, tokens)
        logger.info("activation.redeem.minted code=%s cards=%s", code, len(minted))
        return RedeemResult(code=code, cards=minted, existing=False)

    def _merge_tokens_into_orders(self, rec: dict, code: str, tokens: list[str]) -> None:
        order_id = rec.get("order_id")
        if not order_id:
            return
        keys = [order_index_key(str(order_id))]
        if rec.get("order_key"):
            keys.append(str(rec["order_key"]))
        for key in keys:
            for _ in range(ORDER_MERGE_ATTEMPTS):
                raw = self.store.get(key)
                order = loads_json(raw)
                if not isinstance(order, dict):
                    break
                order["tokens"] = _merge_unique(order.get("tokens"), tokens)
                order["redeemed_codes"] = _merge_unique(order.get("redeemed_codes"), [code])
                if self.store.compare_and_set(key, raw, dumps_json(order)):
                    break
            else:
                logger.warning("activation.order_merge.contended order_id=%s", order_id)

    def lookup_order(self, order_id: str) -> dict | None:
        order_id = str(order_id or "").strip()
        if not order_id:
            return None
        order = self.store.get_json(order_index_key(order_id))
        return order if isinstance(order, dict) else None
