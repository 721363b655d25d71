# savethesquare/extensions.py
from __future__ import annotations

import atexit
import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import stripe
from blinker import Namespace
from flask import current_app
from flask_cors import CORS
from flask_mail import Mail, Message
from flask_migrate import Migrate
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy
from jinja2 import Environment, FileSystemLoader, select_autoescape

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Core singletons
# ─────────────────────────────────────────────────────────────
db = SQLAlchemy()
migrate = Migrate()
mail = Mail()
cors = CORS()
socketio = SocketIO(async_mode=os.getenv("SOCKET_ASYNC_MODE", "threading"))


# ─────────────────────────────────────────────────────────────
# Background tasks + clean shutdown
# ─────────────────────────────────────────────────────────────
_BG_MAX_WORKERS = int(os.getenv("BG_MAX_WORKERS", "4"))
_EXECUTOR = ThreadPoolExecutor(max_workers=_BG_MAX_WORKERS, thread_name_prefix="sts-bg")


def run_bg(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
    return _EXECUTOR.submit(func, *args, **kwargs)


@atexit.register
def _shutdown_executor() -> None:
    _EXECUTOR.shutdown(wait=False, cancel_futures=True)


# ─────────────────────────────────────────────────────────────
# Email helper
# ─────────────────────────────────────────────────────────────
_MAIL_ENV: Optional[Environment] = None


def get_mail_env() -> Environment:
    """Jinja environment over savethesquare/templates/emails."""
    global _MAIL_ENV
    if _MAIL_ENV is None:
        templates_dir = Path(__file__).resolve().parent / "templates" / "emails"
        _MAIL_ENV = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )
    return _MAIL_ENV


def render_email(template: str, **ctx: Any) -> str:
    return get_mail_env().get_template(template).render(**ctx)


def send_email_async(
    app: Any,
    subject: str,
    recipients: List[str],
    *,
    html: Optional[str] = None,
    body: Optional[str] = None,
    sender: Optional[str] = None,
    max_retries: int = 2,
    retry_backoff: float = 0.5,
) -> Future:
    """Send on the background executor; the caller does not wait."""

    def _job() -> bool:
        with app.app_context():
            logger = getattr(app, "logger", log)
            msg = Message(
                subject=subject,
                recipients=recipients,
                sender=sender or app.config.get("DEFAULT_MAIL_SENDER"),
                html=html,
                body=body,
            )
            attempts = 0
            while True:
                try:
                    mail.send(msg)
                    logger.info("Confirmation email sent to %s", ", ".join(recipients))
                    return True
                except Exception as e:
                    attempts += 1
                    if attempts > max_retries:
                        logger.error("Email send permanently failed: %s", e, exc_info=True)
                        return False
                    logger.warning("Mail send failed (attempt %s/%s): %s", attempts, max_retries, e)
                    time.sleep(float(retry_backoff) * attempts)

    return run_bg(_job)


# ─────────────────────────────────────────────────────────────
# Property boundary (loaded once by create_app)
# ─────────────────────────────────────────────────────────────
BOUNDARY_EXT_KEY = "savethesquare.boundary"


def get_boundary() -> Any:
    return current_app.extensions[BOUNDARY_EXT_KEY]


# purchasable cell count, or None when the grid was too large to enumerate
PURCHASABLE_EXT_KEY = "savethesquare.purchasable_cells"


def get_purchasable_count() -> Optional[int]:
    return current_app.extensions.get(PURCHASABLE_EXT_KEY)


# ─────────────────────────────────────────────────────────────
# Signals + safe socket emit
# ─────────────────────────────────────────────────────────────
_signals = Namespace()
donation_recorded = _signals.signal("donation-recorded")


def emit_socket(event: str, data: Optional[Dict[str, Any]] = None, room: Optional[str] = None) -> bool:
    try:
        socketio.emit(event, data or {}, to=room)
        return True
    except Exception as e:
        log.warning("socket emit failed: %s", e)
        return False


# ─────────────────────────────────────────────────────────────
# Stripe initialization
# ─────────────────────────────────────────────────────────────
def _guess_stripe_mode(api_key: Optional[str]) -> str:
    if not api_key:
        return "disabled"
    if api_key.startswith(("sk_live_", "rk_live_")):
        return "live"
    if api_key.startswith(("sk_test_", "rk_test_")):
        return "test"
    return "unknown"


def init_stripe(app: Any) -> None:
    api_key = app.config.get("STRIPE_SECRET_KEY") or ""
    mode = _guess_stripe_mode(api_key)
    app.config["STRIPE_MODE"] = mode

    if not api_key:
        if app.config.get("STRIPE_TEST_MODE"):
            app.logger.info("Stripe not configured; checkout runs in simulated test mode")
        else:
            app.logger.warning("Stripe NOT initialized: missing STRIPE_SECRET_KEY")
        return

    stripe.api_key = api_key
    app.logger.info("Stripe initialized (%s mode)", mode)


# ─────────────────────────────────────────────────────────────
# Init all extensions
# ─────────────────────────────────────────────────────────────
def init_all_extensions(app: Any) -> None:
    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)

    origins = app.config.get("CORS_ORIGINS") or "*"
    cors.init_app(
        app,
        resources={r"/api/*": {"origins": origins}, r"/payments/*": {"origins": origins}},
        supports_credentials=origins != "*",
    )

    init_stripe(app)
    socketio.init_app(app, cors_allowed_origins=origins)


__all__ = [
    "db",
    "migrate",
    "mail",
    "cors",
    "socketio",
    "run_bg",
    "get_mail_env",
    "render_email",
    "send_email_async",
    "donation_recorded",
    "emit_socket",
    "init_stripe",
    "init_all_extensions",
    "BOUNDARY_EXT_KEY",
    "get_boundary",
    "PURCHASABLE_EXT_KEY",
    "get_purchasable_count",
]
