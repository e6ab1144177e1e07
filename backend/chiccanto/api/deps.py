from fastapi import Depends, Request

from chiccanto.core.settings import settings
from chiccanto.services.activation import ActivationRegistry, RegistryConfig
from chiccanto.services.kv_store import KVStore, get_kv_store
from chiccanto.services.rate_limit import FixedWindowRateLimiter


def get_registry(store: KVStore = Depends(get_kv_store)) -> ActivationRegistry:
    return ActivationRegistry(store, RegistryConfig.from_settings(settings))


def get_redeem_limiter(store: KVStore = Depends(get_kv_store)) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(
        store,
        limit=settings.redeem_rate_limit,
        window_s=settings.redeem_rate_window_s,
    )


def get_request_ip(request: Request) -> str:
    cf_ip = (request.headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    # X-Forwarded-For / X-Real-IP are client-controlled unless a proxy rewrites them.
    if settings.trust_proxy_headers:
        xff = (request.headers.get("x-forwarded-for") or "").strip()
        first = xff.split(",")[0].strip() if xff else ""
        if first:
            return first
        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
    client = getattr(request, "client", None)
    host = getattr(client, "host", None) if client else None
    if host:
        return str(host).strip()
    return "unknown"


def request_origin(request: Request) -> str:
    if settings.public_origin:
        return settings.public_origin.rstrip("/")
    return str(request.base_url).rstrip("/")
