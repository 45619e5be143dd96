"""Shared-secret access guard for machine-to-machine endpoints."""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import Any

from fastapi import Header, Request

from agents.dunning.errors import AuthError
from backend.core.config import settings
from backend.core.observability.metrics import increment_auth_failures


@dataclass
class AccessCheck:
    ok: bool
    status: int = 200
    body: dict[str, Any] = field(default_factory=dict)


def extract_credential(x_api_key: str | None, authorization: str | None) -> str | None:
    """Credential from ``X-API-Key``, falling back to ``Authorization: Bearer``."""
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    if authorization:
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return None


def check_api_key(provided: str | None, server_key: str | None = None) -> AccessCheck:
    """Compare a caller credential against the configured key in constant time.

    Server key not configured -> 500; credential missing -> 401; wrong -> 403.
    """
    expected = settings.LICENSING_API_KEY if server_key is None else server_key
    if not expected:
        return AccessCheck(
            ok=False,
            status=500,
            body={"error": "server_key_missing", "detail": "Server API key not configured"},
        )
    if not provided:
        return AccessCheck(
            ok=False,
            status=401,
            body={"error": "unauthorized", "detail": "Missing API key"},
        )
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return AccessCheck(
            ok=False,
            status=403,
            body={"error": "forbidden", "detail": "Invalid API key"},
        )
    return AccessCheck(ok=True)


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    authorization: str | None = Header(None, alias="Authorization"),
) -> None:
    """FastAPI dependency guarding machine endpoints.

    The server key is read from the app's settings when present so that tests
    and embedded apps can inject their own configuration.
    """
    app_settings = getattr(request.app.state, "settings", None) or settings
    res = check_api_key(
        extract_credential(x_api_key, authorization), app_settings.LICENSING_API_KEY or ""
    )
    if not res.ok:
        increment_auth_failures(res.body["error"])
        raise AuthError(res.body["detail"], status_code=res.status, code=res.body["error"])
