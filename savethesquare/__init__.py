# savethesquare/__init__.py
# Save The Square: Flask app factory
# - env-first config class, fail-fast production guardrails
# - property boundary loaded once at startup (a bad boundary aborts boot)
# - JSON error shape for /api and /payments, request ids on every response

from __future__ import annotations

import logging
import os
import time
from dataclasses import replace
from importlib import import_module
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, Union
from uuid import uuid4

import sentry_sdk
from dotenv import load_dotenv
from flask import Blueprint, Flask, g, jsonify, request
from flask_compress import Compress
from flask_talisman import Talisman
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from werkzeug.exceptions import HTTPException, InternalServerError
from werkzeug.middleware.proxy_fix import ProxyFix

from savethesquare.config import CONFIG_BY_NAME
from savethesquare.core.errors import (
    CheckoutFailure,
    MalformedBoundaryData,
    PersistenceReadFailure,
    PersistenceWriteFailure,
)
from savethesquare.core.geometry import PropertyBoundary, count_cells, grid_shape, load_boundary
from savethesquare.core.local_state import LocalState
from savethesquare import models  # noqa: F401  (registers tables)
from savethesquare.extensions import BOUNDARY_EXT_KEY, PURCHASABLE_EXT_KEY, db, init_all_extensions
from savethesquare.services.persistence import BACKEND_EXT_KEY, init_persistence
from savethesquare.services.sessions import REGISTRY_EXT_KEY, SelectionRegistry

# never override real env vars
load_dotenv(override=False)

PACKAGE_DIR = Path(__file__).resolve().parent
ConfigLike = Union[str, Type[Any]]

log = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _env_mode() -> str:
    for key in ("APP_ENV", "ENV", "FLASK_ENV"):
        val = (os.getenv(key) or "").strip().lower()
        if val:
            return {"prod": "production", "dev": "development", "test": "testing"}.get(val, val)
    return "development"


def _resolve_config(target: Optional[ConfigLike]) -> ConfigLike:
    """
    Choose the config class.
    - If explicitly provided (class, dotted path or alias), respect it.
    - Else if FLASK_CONFIG is set, use it.
    - Else pick by APP_ENV/ENV/FLASK_ENV, defaulting to development.
    """
    if target is None:
        target = (os.getenv("FLASK_CONFIG") or "").strip() or None
    if target is None:
        return CONFIG_BY_NAME.get(_env_mode(), CONFIG_BY_NAME["development"])
    if isinstance(target, str) and target.lower() in CONFIG_BY_NAME:
        return CONFIG_BY_NAME[target.lower()]
    return target


def _config_class(cfg: ConfigLike) -> Optional[Type[Any]]:
    if isinstance(cfg, str):
        module_name, _, attr = cfg.rpartition(".")
        return getattr(import_module(module_name), attr, None) if module_name else None
    return cfg


def _is_prod(app: Flask) -> bool:
    return str(app.config.get("ENV") or "").lower() == "production"


def _json_error(message: str, status: int, **extra: Any):
    payload: Dict[str, Any] = {"ok": False, "message": str(message), "error": {"code": int(status), "message": str(message)}}
    rid = extra.pop("request_id", None)
    if rid:
        payload["error"]["request_id"] = rid
    if extra:
        payload["error"].update(extra)

    resp = jsonify(payload)
    resp.status_code = int(status)
    return resp


def _wants_json_response() -> bool:
    path = request.path or ""
    if path.startswith(("/api/", "/payments/")):
        return True
    accept = (request.headers.get("Accept") or "").lower()
    return ("application/json" in accept) or bool(request.is_json)


# -----------------------------------------------------------------------------
# Logging with request_id
# -----------------------------------------------------------------------------
class _RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            # outside an app/request context
            record.request_id = "-"
        return True


def _configure_logging(app: Flask) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s [rid=%(request_id)s]: %(message)s"
    root = logging.getLogger()

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        handler.addFilter(_RequestIDFilter())
        root.addHandler(handler)
    else:
        for h in root.handlers:
            h.addFilter(_RequestIDFilter())
            if not getattr(h, "formatter", None) or "%(request_id)s" not in getattr(h.formatter, "_fmt", ""):
                h.setFormatter(logging.Formatter(fmt))

    root.setLevel(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    logging.getLogger("werkzeug").setLevel(str(app.config.get("WERKZEUG_LOG_LEVEL", "WARNING")).upper())
    app.logger.info("Loaded config: ENV=%s DEBUG=%s", app.config.get("ENV", "?"), app.debug)


# -----------------------------------------------------------------------------
# Integrations
# -----------------------------------------------------------------------------
def _apply_proxyfix(app: Flask) -> None:
    if not app.config.get("TRUST_PROXY"):
        return
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=1)
    app.logger.info("ProxyFix enabled (trusting X-Forwarded-* headers).")


def _init_sentry(app: Flask) -> None:
    dsn = (app.config.get("SENTRY_DSN") or "").strip()
    if not dsn:
        return
    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FlaskIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        send_default_pii=False,
        environment=app.config.get("ENV", "development"),
        release=app.config.get("APP_VERSION"),
    )
    app.logger.info("Sentry initialized")


def _init_talisman(app: Flask) -> None:
    if not _is_prod(app):
        return
    Talisman(app, content_security_policy=None)


def _load_property(app: Flask) -> None:
    path = app.config.get("PROPERTY_BOUNDARY_PATH")
    try:
        boundary = load_boundary(path, name="")
    except MalformedBoundaryData:
        app.logger.critical("Property boundary at %s is unusable; refusing to start", path)
        raise
    if not boundary.name:
        boundary = replace(boundary, name=app.config.get("PROPERTY_NAME") or "")
    width_m, height_m = boundary.bounds.size_meters()
    app.logger.info(
        "Property %s: %d polygon(s), ~%.0f x %.0f m",
        boundary.name or "(unnamed)",
        len(boundary.polygons),
        width_m,
        height_m,
    )
    app.extensions[BOUNDARY_EXT_KEY] = boundary
    app.extensions[PURCHASABLE_EXT_KEY] = _count_purchasable(app, boundary)


def _count_purchasable(app: Flask, boundary: PropertyBoundary) -> Optional[int]:
    rows, cols = grid_shape(boundary.bounds)
    cap = int(app.config.get("MAX_GRID_CELLS") or 0)
    if cap and rows * cols > cap:
        app.logger.warning("Property grid is %d x %d cells; skipping the purchasable count", rows, cols)
        return None
    started = time.perf_counter()
    total = count_cells(boundary)
    app.logger.info(
        "Purchasable squares: %d of %d (%.0f ms)", total, rows * cols, (time.perf_counter() - started) * 1000
    )
    return total


def _maybe_create_tables(app: Flask) -> None:
    if not app.config.get("AUTO_CREATE_TABLES"):
        return
    with app.app_context():
        db.create_all()


def _init_selection(app: Flask) -> None:
    init_persistence(app)
    app.extensions[REGISTRY_EXT_KEY] = SelectionRegistry(
        app.extensions[BOUNDARY_EXT_KEY],
        lambda: app.extensions[BACKEND_EXT_KEY],
        limit=int(app.config.get("SELECTION_SESSION_LIMIT") or 500),
        price_per_cell=int(app.config.get("SQUARE_PRICE_SEK") or 20),
        debounce_s=int(app.config.get("TEXT_PREVIEW_DEBOUNCE_MS") or 250) / 1000.0,
        state=LocalState(app.config.get("CLIENT_STATE_PATH")),
    )


# -----------------------------------------------------------------------------
# Blueprints
# -----------------------------------------------------------------------------
def _register_blueprints(app: Flask) -> None:
    blueprints: List[Tuple[str, str, Optional[str]]] = [
        ("savethesquare.blueprints.api", "bp", "/api"),
        ("savethesquare.blueprints.payments", "bp", "/payments"),
        ("savethesquare.blueprints.pages", "pages_bp", None),
    ]
    for dotted, attr, prefix in blueprints:
        blueprint = getattr(import_module(dotted), attr)
        if not isinstance(blueprint, Blueprint):
            raise RuntimeError(f"{dotted}.{attr} is not a Blueprint")
        app.register_blueprint(blueprint, url_prefix=prefix)
        app.logger.info("Registered blueprint: %-18s → %s", blueprint.name, prefix or "/")


# -----------------------------------------------------------------------------
# Request lifecycle + errors
# -----------------------------------------------------------------------------
def _register_request_lifecycle(app: Flask) -> None:
    @app.before_request
    def _bootstrap_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g._start_ts = time.perf_counter()

    @app.after_request
    def _attach_request_headers(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "-")
        start = getattr(g, "_start_ts", None)
        if start:
            resp.headers["X-Response-Time-ms"] = str(int((time.perf_counter() - start) * 1000))
        return resp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_err(err: HTTPException):
        if _wants_json_response():
            return _json_error(err.description or err.name, err.code or 500, request_id=getattr(g, "request_id", "-"))
        return err

    @app.errorhandler(PersistenceWriteFailure)
    def _write_failed(err: PersistenceWriteFailure):
        app.logger.error("Persistence write failed: %s", err)
        return _json_error(str(err), 503, retry=True, request_id=getattr(g, "request_id", "-"))

    @app.errorhandler(PersistenceReadFailure)
    def _read_failed(err: PersistenceReadFailure):
        app.logger.error("Persistence read failed: %s", err)
        return _json_error(str(err), 503, retry=True, request_id=getattr(g, "request_id", "-"))

    @app.errorhandler(CheckoutFailure)
    def _checkout_failed(err: CheckoutFailure):
        app.logger.error("Checkout failed: %s", err)
        return _json_error(str(err), 502, request_id=getattr(g, "request_id", "-"))

    @app.errorhandler(Exception)
    def _uncaught(err: Exception):
        app.logger.exception("Unhandled error")

        if (request.path or "").startswith("/payments/stripe/webhook"):
            return ("", 500)

        if _wants_json_response():
            return _json_error("Internal Server Error", 500, request_id=getattr(g, "request_id", "-"))
        return InternalServerError()


def _register_health_endpoints(app: Flask) -> None:
    @app.get("/healthz")
    def _healthz():
        boundary = app.extensions.get(BOUNDARY_EXT_KEY)
        return {
            "status": "ok",
            "env": app.config.get("ENV", "unknown"),
            "property": getattr(boundary, "name", None),
            "request_id": getattr(g, "request_id", "-"),
        }

    @app.get("/version")
    def _version():
        return {
            "version": app.config.get("APP_VERSION"),
            "commit": os.getenv("GIT_COMMIT", "dev"),
            "env": app.config.get("ENV"),
            "site_url": app.config.get("SITE_URL") or "",
        }


# -----------------------------------------------------------------------------
# App Factory
# -----------------------------------------------------------------------------
def create_app(config_class: Optional[ConfigLike] = None) -> Flask:
    app = Flask(
        __name__,
        template_folder=str(PACKAGE_DIR / "templates"),
        instance_relative_config=False,
    )

    # ---- Config loading
    cfg = _resolve_config(config_class)
    app.config.from_object(cfg)
    cls = _config_class(cfg)
    if cls is not None and hasattr(cls, "init_app"):
        cls.init_app(app)

    app.url_map.strict_slashes = False
    app.json.sort_keys = False
    app.json.ensure_ascii = False

    # ---- Proxy handling first
    _apply_proxyfix(app)

    # ---- Logging / integrations
    _configure_logging(app)
    _init_sentry(app)
    _init_talisman(app)
    Compress(app)

    # ---- Core extensions + domain state
    init_all_extensions(app)
    _load_property(app)
    _maybe_create_tables(app)
    _init_selection(app)

    # ---- Request lifecycle / errors / routes
    _register_request_lifecycle(app)
    _register_error_handlers(app)
    _register_health_endpoints(app)
    _register_blueprints(app)

    from savethesquare.cli import register_cli

    register_cli(app)

    app.logger.info("Save The Square ready (%s)", app.config.get("ENV"))
    return app


__all__ = ["create_app"]
