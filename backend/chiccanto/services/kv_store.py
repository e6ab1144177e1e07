from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

import requests
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from chiccanto.core.errors import ApiError, MisconfiguredError
from chiccanto.core.settings import settings
from chiccanto.models.kv_entry import KVEntry

logger = logging.getLogger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
CLOUDFLARE_MIN_TTL_S = 60
PURGE_INTERVAL_S = 60


class KVStoreError(ApiError):
    status_code = 500
    error = "Storage unavailable."


def dumps_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def loads_json(raw: str | None) -> Any | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


class KVStore:
    """String key-value store with optional per-key expiry.

    Subclasses implement ``get``, ``put``, ``delete`` and ``compare_and_set``.
    ``compare_and_set(key, None, value)`` means "write only if absent".
    """

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def put(self, key: str, value: str, ttl_s: int | None = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def compare_and_set(self, key: str, expected: str | None, value: str, ttl_s: int | None = None) -> bool:
        raise NotImplementedError

    def get_json(self, key: str) -> Any | None:
        return loads_json(self.get(key))

    def put_json(self, key: str, obj: Any, ttl_s: int | None = None) -> None:
        self.put(key, dumps_json(obj), ttl_s=ttl_s)

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        return 0


@dataclass
class _Entry:
    expires_at: float | None
    value: str


class MemoryKVStore(KVStore):
    """Process-local store. Not durable; meant for tests and local dev."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._items: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._last_purge = 0.0

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, e in self._items.items() if e.expires_at is not None and e.expires_at <= now]
        for k in expired:
            del self._items[k]
        self._last_purge = now
        return len(expired)

    def _maybe_purge_locked(self) -> None:
        now = self._clock()
        if now - self._last_purge >= PURGE_INTERVAL_S:
            self._purge_locked(now)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _live(self, key: str) -> _Entry | None:
        entry = self._items.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            self._items.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_s: int | None) -> float | None:
        if ttl_s is None:
            return None
        return self._clock() + max(1, int(ttl_s))

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    def put(self, key: str, value: str, ttl_s: int | None = None) -> None:
        with self._lock:
            if ttl_s is not None:
                self._maybe_purge_locked()
            self._items[key] = _Entry(expires_at=self._expiry(ttl_s), value=value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def compare_and_set(self, key: str, expected: str | None, value: str, ttl_s: int | None = None) -> bool:
        with self._lock:
            if ttl_s is not None:
                self._maybe_purge_locked()
            entry = self._live(key)
            current = entry.value if entry else None
            if current != expected:
                return False
            self._items[key] = _Entry(expires_at=self._expiry(ttl_s), value=value)
            return True

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in list(self._items.keys()) if k.startswith(prefix) and self._live(k)]


class SQLKVStore(KVStore):
    """Durable store on the ``kv_entries`` table."""

    def __init__(self, session_factory: Callable[[], Session], *, clock: Callable[[], float] = time.time) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._last_purge = 0.0
        self._purge_lock = threading.Lock()

    def _expiry(self, ttl_s: int | None) -> float | None:
        if ttl_s is None:
            return None
        return self._clock() + max(1, int(ttl_s))

    def _not_expired(self, now: float):
        return or_(KVEntry.expires_at.is_(None), KVEntry.expires_at > now)

    def purge_expired(self) -> int:
        now = self._clock()
        db = self._session_factory()
        try:
            removed = (
                db.query(KVEntry)
                .filter(KVEntry.expires_at.isnot(None), KVEntry.expires_at <= now)
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("kv.sql.purge.error")
            raise KVStoreError()
        finally:
            db.close()
        self._last_purge = now
        if removed:
            logger.info("kv.sql.purge removed=%s", removed)
        return removed

    def _maybe_purge(self) -> None:
        with self._purge_lock:
            if self._clock() - self._last_purge < PURGE_INTERVAL_S:
                return
            self.purge_expired()

    def get(self, key: str) -> str | None:
        db = self._session_factory()
        try:
            row = db.query(KVEntry).filter(KVEntry.key == key, self._not_expired(self._clock())).first()
            return row.value if row else None
        except SQLAlchemyError:
            logger.exception("kv.sql.get.error key=%s", key)
            raise KVStoreError()
        finally:
            db.close()

    def put(self, key: str, value: str, ttl_s: int | None = None) -> None:
        if ttl_s is not None:
            self._maybe_purge()
        db = self._session_factory()
        try:
            db.merge(KVEntry(key=key, value=value, expires_at=self._expiry(ttl_s)))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("kv.sql.put.error key=%s", key)
            raise KVStoreError()
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._session_factory()
        try:
            db.query(KVEntry).filter(KVEntry.key == key).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("kv.sql.delete.error key=%s", key)
            raise KVStoreError()
        finally:
            db.close()

    def compare_and_set(self, key: str, expected: str | None, value: str, ttl_s: int | None = None) -> bool:
        if ttl_s is not None:
            self._maybe_purge()
        now = self._clock()
        db = self._session_factory()
        try:
            if expected is None:
                db.query(KVEntry).filter(
                    KVEntry.key == key,
                    KVEntry.expires_at.isnot(None),
                    KVEntry.expires_at <= now,
                ).delete(synchronize_session=False)
                db.add(KVEntry(key=key, value=value, expires_at=self._expiry(ttl_s)))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
                return True

            updated = (
                db.query(KVEntry)
                .filter(KVEntry.key == key, KVEntry.value == expected, self._not_expired(now))
                .update({KVEntry.value: value, KVEntry.expires_at: self._expiry(ttl_s)}, synchronize_session=False)
            )
            db.commit()
            return updated == 1
        except SQLAlchemyError:
            db.rollback()
            logger.exception("kv.sql.compare_and_set.error key=%s", key)
            raise KVStoreError()
        finally:
            db.close()


class CloudflareKVStore(KVStore):
    """Workers KV through the Cloudflare REST API.

    Workers KV has no conditional write, so ``compare_and_set`` here is a
    read-compare-write and two concurrent callers can both succeed.
    """

    def __init__(self, *, account_id: str, namespace_id: str, api_token: str, timeout_s: float = 10) -> None:
        self._base = f"{CLOUDFLARE_API_BASE}/accounts/{account_id}/storage/kv/namespaces/{namespace_id}"
        self._headers = {"authorization": f"Bearer {api_token}"}
        self._timeout_s = timeout_s

    def _url(self, key: str) -> str:
        return f"{self._base}/values/{quote(key, safe='')}"

    def get(self, key: str) -> str | None:
        try:
            resp = requests.get(self._url(key), headers=self._headers, timeout=self._timeout_s)
        except requests.RequestException:
            logger.exception("kv.cloudflare.get.error key=%s", key)
            raise KVStoreError()
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            logger.warning("kv.cloudflare.get.status key=%s status=%s", key, resp.status_code)
            raise KVStoreError()
        return resp.text

    def put(self, key: str, value: str, ttl_s: int | None = None) -> None:
        params = {}
        if ttl_s is not None:
            params["expiration_ttl"] = max(CLOUDFLARE_MIN_TTL_S, int(ttl_s))
        try:
            resp = requests.put(
                self._url(key),
                params=params,
                data=value.encode("utf-8"),
                headers=self._headers,
                timeout=self._timeout_s,
            )
        except requests.RequestException:
            logger.exception("kv.cloudflare.put.error key=%s", key)
            raise KVStoreError()
        if resp.status_code >= 400:
            logger.warning("kv.cloudflare.put.status key=%s status=%s", key, resp.status_code)
            raise KVStoreError()

    def delete(self, key: str) -> None:
        try:
            resp = requests.delete(self._url(key), headers=self._headers, timeout=self._timeout_s)
        except requests.RequestException:
            logger.exception("kv.cloudflare.delete.error key=%s", key)
            raise KVStoreError()
        if resp.status_code >= 400 and resp.status_code != 404:
            logger.warning("kv.cloudflare.delete.status key=%s status=%s", key, resp.status_code)
            raise KVStoreError()

    def compare_and_set(self, key: str, expected: str | None, value: str, ttl_s: int | None = None) -> bool:
        if self.get(key) != expected:
            return False
        self.put(key, value, ttl_s=ttl_s)
        return True


def build_kv_store(backend: str | None = None) -> KVStore:
    kind = (backend or settings.kv_backend or "sql").lower()
    if kind == "memory":
        return MemoryKVStore()
    if kind == "sql":
        from chiccanto.core.database import SessionLocal

        return SQLKVStore(SessionLocal)
    if kind == "cloudflare":
        if not settings.cf_account_id:
            raise MisconfiguredError("CF_ACCOUNT_ID")
        if not settings.cf_kv_namespace_id:
            raise MisconfiguredError("CF_KV_NAMESPACE_ID")
        if not settings.cf_api_token:
            raise MisconfiguredError("CF_API_TOKEN")
        return CloudflareKVStore(
            account_id=settings.cf_account_id,
            namespace_id=settings.cf_kv_namespace_id,
            api_token=settings.cf_api_token,
        )
    raise MisconfiguredError("a valid KV_BACKEND")


_STORE: KVStore | None = None
_STORE_LOCK = threading.Lock()


def get_kv_store() -> KVStore:
    global _STORE
    if _STORE is None:
        with _STORE_LOCK:
            if _STORE is None:
                _STORE = build_kv_store()
                logger.info("kv.store.ready backend=%s", type(_STORE).__name__)
    return _STORE
