#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Save The Square launcher.

- Local dev:             ./run.py
- Local dev (no reload): ./run.py --env development --no-reload
- Production:            ENV=production TRUST_PROXY=1 ./run.py --env production --no-reload
- Gunicorn:              gunicorn -k eventlet -w 1 "wsgi:app"

Flask-SocketIO serves the app so `new_donation` broadcasts reach open maps.
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from dotenv import load_dotenv

log = logging.getLogger("savethesquare.run")

ENV_NAMES = ("development", "testing", "production")


@dataclass(frozen=True)
class LaunchSettings:
    host: str
    port: int
    env: str
    debug: bool
    reload: bool
    config: Optional[str]

    @property
    def ssl_context(self) -> Optional[Tuple[str, str]]:
        cert, key = os.getenv("SSL_CERTFILE"), os.getenv("SSL_KEYFILE")
        return (cert, key) if cert and key else None


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Serve the Save The Square map and donation API.")
    p.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    p.add_argument("--port", type=int, default=int(os.getenv("PORT", "5000")))
    p.add_argument("--env", choices=ENV_NAMES, default=None, help="Overrides ENV/APP_ENV.")
    p.add_argument("--config", default=None, help="Config class: dotted path or alias (dev/test/prod).")
    p.add_argument("--debug", action=argparse.BooleanOptionalAction, default=None)
    p.add_argument("--no-reload", action="store_true", help="Disable the Werkzeug reloader.")
    return p.parse_args(argv)


def resolve_settings(args: argparse.Namespace) -> LaunchSettings:
    from savethesquare.config import CONFIG_BY_NAME

    requested = (args.env or os.getenv("ENV") or os.getenv("APP_ENV") or "development").strip().lower()
    env = getattr(CONFIG_BY_NAME.get(requested), "ENV", None) or "development"
    # the factory reads these when --config is not given
    os.environ["ENV"] = os.environ["APP_ENV"] = env

    if args.debug is not None:
        debug = args.debug
    else:
        debug = os.getenv("FLASK_DEBUG", "1" if env != "production" else "0").strip().lower() in {"1", "true", "yes", "on"}
    os.environ["FLASK_DEBUG"] = "1" if debug else "0"

    return LaunchSettings(
        host=args.host,
        port=args.port,
        env=env,
        debug=debug,
        reload=debug and env != "production" and not args.no_reload,
        config=args.config,
    )


def port_taken(host: str, port: int) -> bool:
    target = "127.0.0.1" if host in {"0.0.0.0", "::"} else host
    try:
        with socket.create_connection((target, port), timeout=0.35):
            return True
    except OSError:
        return False


def banner(settings: LaunchSettings, app) -> None:
    from savethesquare.extensions import BOUNDARY_EXT_KEY

    boundary = app.extensions.get(BOUNDARY_EXT_KEY)
    checkout = "simulated" if app.config.get("STRIPE_TEST_MODE") and not app.config.get("STRIPE_SECRET_KEY") else app.config.get("STRIPE_MODE")
    print(f"\n\033[1;32m🌿  Save The Square: {getattr(boundary, 'name', '?')}\033[0m")
    print(f"\033[1;33m✨ {datetime.now():%Y-%m-%d %H:%M:%S}\033[0m")
    print(f"🔎 ENV:        {settings.env}  (debug={settings.debug}, reload={settings.reload})")
    print(f"💳 Checkout:   {checkout}  ({app.config.get('SQUARE_PRICE_SEK')} SEK per square)")
    print(f"🗄️  Donations:  {app.config.get('PERSISTENCE_BACKEND')}")
    print(f"🌎 Listening:  {settings.host}:{settings.port}  (Python {sys.version.split()[0]})")


def main(argv=None) -> None:
    # never override real env vars
    load_dotenv(override=False)
    settings = resolve_settings(parse_args(argv))
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)

    if port_taken(settings.host, settings.port):
        log.error("Port %s is already in use on %s", settings.port, settings.host)
        raise SystemExit(2)

    from savethesquare import create_app
    from savethesquare.extensions import socketio

    app = create_app(settings.config)
    # the reloader parent process only watches files
    if not settings.reload or os.environ.get("WERKZEUG_RUN_MAIN") == "true":
        banner(settings, app)

    socketio.run(
        app,
        host=settings.host,
        port=settings.port,
        debug=settings.debug,
        use_reloader=settings.reload,
        ssl_context=settings.ssl_context,
        allow_unsafe_werkzeug=settings.debug,
    )


if __name__ == "__main__":
    main()
