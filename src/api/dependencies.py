from __future__ import annotations

import threading

from fastapi import Header, Request

from src.config.load_config import AppConfig, ConfigError, load_app_config
from src.api.errors import APIError


_CONFIG_INIT_LOCK = threading.Lock()


def get_app_config(request: Request) -> AppConfig:
    """FastAPI dependency: returns the AppConfig cached in `app.state` (lazy init).

    The TOML file is parsed once per process; every request and sweep tick sees
    the same timeouts.
    """
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached

    with _CONFIG_INIT_LOCK:
        cached2 = getattr(request.app.state, "app_config", None)
        if isinstance(cached2, AppConfig):
            return cached2
        try:
            cfg = load_app_config()
        except ConfigError as e:
            raise APIError(status_code=500, code="internal", message=str(e)) from e
        request.app.state.app_config = cfg
        return cfg


def bearer_token(authorization: str | None = Header(default=None)) -> str:
    """Raw worker token from `Authorization: Bearer <token>`; empty when absent.

    Credential checks are left to the registry so a missing header and a bad
    token produce the same `unauthenticated` error.
    """
    raw = (authorization or "").strip()
    scheme, _, value = raw.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return value.strip()
