"""
Rate limiting for the broker API.

Uses Flask-Limiter with in-memory storage (suitable for single-worker gunicorn).
Every client connects from the same socket, so requests are keyed by the
caller's uid instead of a remote address.
"""

from flask import Flask, g

from flask_limiter import Limiter

from couchbroker.api import auth
from couchbroker.api.responses import api_error
from couchbroker.config.loader import BrokerConfig


def caller_key() -> str:
    """Rate-limit key: the calling uid, or 'anonymous' if the peer is unknown."""
    # The limiter runs before the blueprint hook that sets g.caller
    caller = g.get("caller") or auth.peer_credentials()
    return f"uid:{caller.uid}" if caller is not None else "anonymous"


limiter = Limiter(
    key_func=caller_key,
    storage_uri="memory://",
)

# Admin (account management) limit; read from config at init time, used by route decorators
admin_limit = "10/minute"


def init_limiter(app: Flask) -> None:
    """Attach the limiter to the Flask app and configure from broker config."""
    global admin_limit

    rl_config = BrokerConfig.get("security", "rate_limiting", default={})
    enabled = rl_config.get("enabled", True)

    if not enabled:
        app.config["RATELIMIT_ENABLED"] = False

    app.config.setdefault("RATELIMIT_DEFAULT", rl_config.get("default_limit", "600/minute"))
    admin_limit = rl_config.get("admin_limit", "10/minute")

    limiter.init_app(app)

    @app.errorhandler(429)
    def rate_limit_handler(e):
        return api_error("Rate limit exceeded. Try again later.", 429, kind="Failed")
