# savethesquare/config/config.py
# Save The Square configuration (env-first, production-safe)

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

_PACKAGE_DIR = Path(__file__).resolve().parent.parent


# ----------------------------
# Env helpers
# ----------------------------
_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = v.lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    return default


def _int(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _clean_base_url(v: Optional[str]) -> str:
    return (v or "").strip().rstrip("/")


# ----------------------------
# Config classes
# ----------------------------
class BaseConfig:
    """
    Env-first config:
    - every setting below can be overridden via environment variables
    - safe defaults for local dev (SQLite, Stripe and email in test mode)
    """

    ENV = (_env("APP_ENV") or _env("ENV") or _env("FLASK_ENV") or "base").lower()
    DEBUG = _bool("FLASK_DEBUG", False)
    TESTING = _bool("TESTING", False)

    APP_VERSION = _env("APP_VERSION", "1.0.0")
    LOG_LEVEL = _env("LOG_LEVEL", "INFO")
    SENTRY_DSN = _env("SENTRY_DSN")

    # Security
    SECRET_KEY = _env("SECRET_KEY", "dev-change-me")
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = _env("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_SECURE = True
    PERMANENT_SESSION_LIFETIME = timedelta(days=_int("SESSION_DAYS", 7))
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "https")
    TRUST_PROXY = _bool("TRUST_PROXY", False)
    CORS_ORIGINS = _env("CORS_ORIGINS", "*")

    # Site
    SITE_URL = _clean_base_url(_env("SITE_URL", "http://localhost:5000"))
    PROPERTY_NAME = _env("PROPERTY_NAME", "Visne Ängar")
    PROPERTY_BOUNDARY_PATH = _env(
        "PROPERTY_BOUNDARY_PATH", str(_PACKAGE_DIR / "data" / "property_borders.json")
    )

    # Pricing
    SQUARE_PRICE_SEK = _int("SQUARE_PRICE_SEK", 20)
    CURRENCY = (_env("CURRENCY", "sek") or "sek").lower()

    # Selection
    TEXT_PREVIEW_DEBOUNCE_MS = _int("TEXT_PREVIEW_DEBOUNCE_MS", 250)
    TEXT_MAX_CHARS = _int("TEXT_MAX_CHARS", 60)
    # bounding boxes larger than this skip the purchasable-cell count at boot
    MAX_GRID_CELLS = _int("MAX_GRID_CELLS", 25_000_000)
    SELECTION_SESSION_LIMIT = _int("SELECTION_SESSION_LIMIT", 500)
    CLIENT_STATE_PATH = _env("CLIENT_STATE_PATH", "instance/client_state.json")

    # Persistence: "sql" (SQLAlchemy) or "supabase" (PostgREST over HTTP)
    PERSISTENCE_BACKEND = (_env("PERSISTENCE_BACKEND", "sql") or "sql").lower()
    SUPABASE_URL = _clean_base_url(_env("SUPABASE_URL", ""))
    SUPABASE_ANON_KEY = _env("SUPABASE_ANON_KEY", "")
    SUPABASE_TABLE = _env("SUPABASE_TABLE", "donations")
    SUPABASE_TIMEOUT_S = _int("SUPABASE_TIMEOUT_S", 10)

    SQLALCHEMY_DATABASE_URI = _env("SQLALCHEMY_DATABASE_URI", _env("DATABASE_URL", "sqlite:///savethesquare-dev.db"))
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_TABLES = _bool("AUTO_CREATE_TABLES", False)

    # Stripe
    STRIPE_SECRET_KEY = _env("STRIPE_SECRET_KEY", "")
    STRIPE_PUBLIC_KEY = _env("STRIPE_PUBLIC_KEY", _env("STRIPE_PUBLISHABLE_KEY", ""))
    STRIPE_WEBHOOK_SECRET = _env("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_TEST_MODE = _bool("STRIPE_TEST_MODE", True)

    # Email
    MAIL_SERVER = _env("MAIL_SERVER", "localhost")
    MAIL_PORT = _int("MAIL_PORT", 25)
    MAIL_USE_TLS = _bool("MAIL_USE_TLS", False)
    MAIL_USE_SSL = _bool("MAIL_USE_SSL", False)
    MAIL_USERNAME = _env("MAIL_USERNAME")
    MAIL_PASSWORD = _env("MAIL_PASSWORD")
    DEFAULT_MAIL_SENDER = _env("DEFAULT_MAIL_SENDER", "noreply@visneangar.se")
    MAIL_DEFAULT_SENDER = DEFAULT_MAIL_SENDER
    EMAIL_TEST_MODE = _bool("EMAIL_TEST_MODE", True)

    @classmethod
    def init_app(cls, app) -> None:
        """Boot hardening, called by create_app() after from_object()."""
        uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")

        if uri.startswith("sqlite:"):
            opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
            connect_args = dict(opts.get("connect_args") or {})
            connect_args.setdefault("check_same_thread", False)
            opts["connect_args"] = connect_args
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts

        backend = app.config.get("PERSISTENCE_BACKEND")
        if backend not in ("sql", "supabase"):
            raise RuntimeError(f"PERSISTENCE_BACKEND must be 'sql' or 'supabase', got {backend!r}")
        if backend == "supabase" and not (app.config.get("SUPABASE_URL") and app.config.get("SUPABASE_ANON_KEY")):
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required for the supabase backend.")


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True

    SESSION_COOKIE_SECURE = False
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "http")
    AUTO_CREATE_TABLES = _bool("AUTO_CREATE_TABLES", True)


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    DEBUG = False

    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    AUTO_CREATE_TABLES = True
    PERSISTENCE_BACKEND = "sql"
    SESSION_COOKIE_SECURE = False

    STRIPE_SECRET_KEY = ""
    STRIPE_WEBHOOK_SECRET = ""
    STRIPE_TEST_MODE = True
    EMAIL_TEST_MODE = True
    MAIL_SUPPRESS_SEND = True

    CLIENT_STATE_PATH = None
    SENTRY_DSN = None
    SITE_URL = "http://localhost:5000"


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False

    SESSION_COOKIE_SECURE = True
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "https")
    TRUST_PROXY = _bool("TRUST_PROXY", True)
    STRIPE_TEST_MODE = _bool("STRIPE_TEST_MODE", False)
    EMAIL_TEST_MODE = _bool("EMAIL_TEST_MODE", False)

    @classmethod
    def init_app(cls, app) -> None:
        super().init_app(app)

        # ---- Production guardrails (fail fast) ----
        sk = app.config.get("SECRET_KEY")
        if not sk or sk == "dev-change-me":
            raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")

        site = (app.config.get("SITE_URL") or "").strip()
        if site.startswith("http://"):
            raise RuntimeError("SITE_URL must be https:// in production.")

        if not app.config.get("STRIPE_TEST_MODE"):
            secret = app.config.get("STRIPE_SECRET_KEY") or ""
            if not secret.startswith(("sk_live_", "rk_live_")):
                raise RuntimeError("A live STRIPE_SECRET_KEY is required unless STRIPE_TEST_MODE=1.")
            if not app.config.get("STRIPE_WEBHOOK_SECRET"):
                raise RuntimeError("STRIPE_WEBHOOK_SECRET is required unless STRIPE_TEST_MODE=1.")

        if _bool("FLASK_DEBUG", False):
            raise RuntimeError("FLASK_DEBUG must be 0 in production.")
