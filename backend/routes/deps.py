"""
Shared dependencies for route modules.

This module provides access to the copy-trading services and shared
request helpers.
"""

import logging
import os
import secrets
import sys
from typing import Any

from fastapi import HTTPException, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

# =============================================================================
# SECURITY: API Key Authentication
# =============================================================================

ENV = os.getenv("ENV", "development").lower()
API_KEY = os.getenv("API_KEY")

if not API_KEY:
    if ENV == "production":
        logger.critical("[Security] FATAL: API_KEY environment variable not set.")
        sys.exit(1)
    else:
        API_KEY = secrets.token_urlsafe(32)
        logger.warning(f"[Security] Generated temporary key: {API_KEY}")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def check_api_key(api_key: str) -> bool:
    return bool(api_key) and secrets.compare_digest(api_key, API_KEY)


async def verify_api_key(api_key: str = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints"""
    if not check_api_key(api_key):
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key. Include X-API-Key header."
        )
    return api_key


# =============================================================================
# REQUEST HELPERS
# =============================================================================

class BadRequest(ValueError):
    """Malformed action request"""


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def parse_action(body: Any) -> tuple[str, dict]:
    """Split an {action, params} request body"""
    if not isinstance(body, dict) or not body.get("action"):
        raise BadRequest("Request body must contain an action")
    params = body.get("params") or {}
    if not isinstance(params, dict):
        raise BadRequest("params must be an object")
    return body["action"], params


def get_param(params: dict, *names: str, required: bool = True, default: Any = None) -> Any:
    """First present value among snake_case and camelCase spellings"""
    for name in names:
        if params.get(name) is not None:
            return params[name]
    if required:
        raise BadRequest(f"Missing parameter: {names[0]}")
    return default


# =============================================================================
# GLOBAL STATE ACCESSORS
# =============================================================================

# These will be set by server.py at startup
_state = {
    "config": None,
    "gateway": None,
    "fetcher": None,
    "traders": None,
    "subscriptions": None,
    "ledger": None,
    "engine": None,
    "scheduler": None,
}


def set_state(key: str, value):
    """Set a global state value (called from server.py)"""
    _state[key] = value


def get_config():
    return _state["config"]


def get_gateway():
    return _state["gateway"]


def get_fetcher():
    return _state["fetcher"]


def get_traders():
    return _state["traders"]


def get_subscriptions():
    return _state["subscriptions"]


def get_ledger():
    return _state["ledger"]


def get_engine():
    return _state["engine"]


def get_scheduler():
    return _state["scheduler"]
