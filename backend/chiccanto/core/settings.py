import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./chiccanto.db") or "sqlite:///./chiccanto.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")

        self.kv_backend = (_getenv("KV_BACKEND", "sql") or "sql").lower()
        self.cf_account_id = _getenv("CF_ACCOUNT_ID")
        self.cf_kv_namespace_id = _getenv("CF_KV_NAMESPACE_ID")
        self.cf_api_token = _getenv("CF_API_TOKEN")

        self.fulfill_key = _getenv("FULFILL_KEY")
        self.fulfill_session_secret = _getenv("FULFILL_SESSION_SECRET")
        self.fulfill_shared_secret = _getenv("FULFILL_SHARED_SECRET")
        self.fulfill_session_ttl_s = _getenv_int("FULFILL_SESSION_TTL_SECONDS", 12 * 60 * 60)

        self.code_scheme = (_getenv("CODE_SCHEME", "card_key") or "card_key").lower()
        self.allow_direct_redeem = _getenv_bool("ALLOW_DIRECT_REDEEM", default=False)
        self.redeem_rate_limit = _getenv_int("REDEEM_RATE_LIMIT", 60)
        self.redeem_rate_window_s = _getenv_int("REDEEM_RATE_WINDOW_SECONDS", 600)
        self.trust_proxy_headers = _getenv_bool("TRUST_PROXY_HEADERS", default=False)

        self.public_origin = _getenv("PUBLIC_ORIGIN")
        self.support_email = _getenv("SUPPORT_EMAIL", "chiccanto@wearrs.com") or "chiccanto@wearrs.com"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:8787", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
