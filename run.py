#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Kendo Fund launcher.

- Local dev:             ./run.py --env development
- Local dev (no reload): ./run.py --env development --no-reload
- Production:            ENV=production ./run.py --env production --no-reload
- Gunicorn:              gunicorn "wsgi:app"

Runs through Flask-SocketIO so the campaign ticker (`campaign:total`) is live.
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


def _normalize_env_name(v: str) -> str:
    r = (v or "").strip().lower()
    if r in {"dev", "development", "local"}:
        return "development"
    if r in {"test", "testing"}:
        return "testing"
    if r in {"prod", "production"}:
        return "production"
    return r or "development"


def load_env_stack(*, env: Optional[str] = None, override: bool = False) -> List[Path]:
    """
    Loads .env then .env.<env>. override=False so server-provided env vars win.
    Returns the files that were loaded.
    """
    explicit = (os.getenv("DOTENV_PATH") or "").strip()
    candidates = [Path(explicit)] if explicit else [
        Path(".env"),
        Path(f".env.{_normalize_env_name(env or os.getenv('ENV') or os.getenv('APP_ENV') or 'development')}"),
    ]

    loaded: List[Path] = []
    for p in candidates:
        if p.is_file():
            load_dotenv(p, override=override)
            loaded.append(p)
    return loaded


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the Kendo Fund API")
    p.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    p.add_argument("--port", type=int, default=int(os.getenv("PORT", "5000")))
    p.add_argument("--env", choices=["development", "testing", "production"], help="Runtime environment")
    p.add_argument("--config", help="Config name (development/testing/production) or dotted path")
    p.add_argument("--debug", action="store_true", default=None)
    p.add_argument("--no-reload", action="store_true", help="Disable the Werkzeug reloader.")
    p.add_argument("--force", dest="force_run", action="store_true", help="Start even if the port looks busy.")
    return p.parse_args()


def _port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex(("127.0.0.1" if host in {"0.0.0.0", ""} else host, port)) == 0


def preflight_prod_warnings(env: str, debug: bool) -> None:
    if env != "production":
        return
    if debug:
        logging.warning("Production is running with debug enabled. Recommended: drop --debug")

    sk = (os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    if sk.startswith("sk_test_"):
        logging.warning("Paystack secret key looks like a TEST key in production (%s...)", sk[:10])

    base = (os.getenv("SITE_BASE_URL") or "").strip()
    if base.startswith("http://"):
        logging.warning("SITE_BASE_URL is http:// in production; Paystack callbacks should be https.")


def main() -> None:
    load_env_stack(override=False)
    args = parse_args()

    env = _normalize_env_name(args.env or os.getenv("ENV") or os.getenv("APP_ENV") or "development")
    load_env_stack(env=env, override=False)
    os.environ["ENV"] = env
    os.environ["APP_ENV"] = env

    debug = bool(args.debug) if args.debug is not None else env != "production"
    use_reloader = debug and not args.no_reload

    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO)
    preflight_prod_warnings(env, debug)

    if not args.force_run and _port_in_use(args.host, args.port):
        logging.error("Port %s already in use (host=%s). Stop the other process or use --force.", args.port, args.host)
        raise SystemExit(2)

    from kendofund import create_app
    from kendofund.extensions import socketio

    flask_app = create_app(args.config or env)
    logging.info("Socket.IO async mode: %s", socketio.async_mode)
    socketio.run(
        flask_app,
        host=args.host,
        port=args.port,
        debug=debug,
        use_reloader=use_reloader,
        allow_unsafe_werkzeug=debug,
    )


if __name__ == "__main__":
    main()
