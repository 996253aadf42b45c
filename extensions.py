"""Flask extension instances shared across the application."""

from flask import request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect


def account_or_remote_address() -> str:
    """Rate-limit key: the calling account when known, else the client address."""
    account_id = request.headers.get("X-Account-Id", "").strip()
    if account_id:
        return f"account:{account_id}"
    return get_remote_address()


db = SQLAlchemy()
csrf = CSRFProtect()
limiter = Limiter(account_or_remote_address, storage_uri="memory://")
