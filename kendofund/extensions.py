import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from blinker import Namespace
from flask_cors import CORS
from flask_mail import Mail, Message
from flask_migrate import Migrate
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy
from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

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
# Safe DB helpers
# ─────────────────────────────────────────────────────────────
def tx_commit() -> None:
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def set_sqlite_busy_timeout(ms: int = 5000) -> None:
    if db.engine.dialect.name != "sqlite":
        return
    db.session.execute(text(f"PRAGMA busy_timeout={int(ms)}"))


def retry_on_db_lock(fn: Callable[[], Any], *, attempts: int = 6) -> Any:
    """Run fn, retrying briefly while SQLite reports the database as locked."""
    for i in range(attempts):
        try:
            return fn()
        except OperationalError as e:
            db.session.rollback()
            msg = str(e).lower()
            if "locked" in msg or "sqlite_busy" in msg:
                if i + 1 < attempts:
                    time.sleep(0.05 * (i + 1))
                    continue
            raise
    return None


# ─────────────────────────────────────────────────────────────
# Email helper
# ─────────────────────────────────────────────────────────────
def get_mail_env(templates_dir: Optional[str] = None) -> Environment:
    """
    Jinja environment for email templates.
    Default path: kendofund/templates/emails
    """
    if not templates_dir:
        templates_dir = str(Path(__file__).resolve().parent / "templates" / "emails")

    return Environment(
        loader=FileSystemLoader(templates_dir),
        autoescape=select_autoescape(["html", "xml"]),
    )


def send_email(
    app: Any,
    subject: str,
    recipients: List[str],
    *,
    html_template: Optional[str] = None,
    text_template: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    sender: Optional[str] = None,
) -> None:
    """
    Render and send one message. Raises on failure; callers that must not
    fail (receipts) record the error in the outbox instead.
    """
    ctx = context or {}
    env = get_mail_env()

    html = env.get_template(html_template).render(**ctx) if html_template else None
    body = env.get_template(text_template).render(**ctx) if text_template else None

    msg = Message(
        subject=subject,
        recipients=recipients,
        sender=sender or app.config.get("MAIL_DEFAULT_SENDER"),
        html=html,
        body=body,
    )
    mail.send(msg)


# ─────────────────────────────────────────────────────────────
# Lightweight signals + safe socket emit
# ─────────────────────────────────────────────────────────────
_signals = Namespace()
app_event = _signals.signal("app-event")


def emit_socket(event: str, data: Optional[Dict[str, Any]] = None, room: Optional[str] = None) -> bool:
    try:
        socketio.emit(event, data or {}, to=room)
        return True
    except Exception as e:
        log.warning("socket emit failed: %s", e)
        return False


__all__ = [
    "db",
    "migrate",
    "mail",
    "cors",
    "socketio",
    "tx_commit",
    "set_sqlite_busy_timeout",
    "retry_on_db_lock",
    "get_mail_env",
    "send_email",
    "emit_socket",
    "app_event",
]
