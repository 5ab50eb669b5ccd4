"""
Per-request acting principal and origin.

Values live in context variables so that code running deep inside a flush
(the audit listener) can see who triggered the mutation without it being
passed through every call.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from dietician_core.core.config import get_settings

SYSTEM_PRINCIPAL = "SYSTEM"


@dataclass(frozen=True)
class RequestOrigin:
    """Where the current request came from."""

    ip_address: str | None
    user_agent: str | None


_current_principal: ContextVar[str | None] = ContextVar("current_principal", default=None)
_current_origin: ContextVar[RequestOrigin | None] = ContextVar("current_origin", default=None)


def set_current_principal(principal: str | None) -> None:
    """Bind the authenticated principal for the rest of the current context."""
    _current_principal.set(principal)


def current_principal_name() -> str:
    """Return the acting principal, or ``SYSTEM`` when nobody is authenticated."""
    return _current_principal.get() or SYSTEM_PRINCIPAL


def current_request_origin() -> RequestOrigin | None:
    return _current_origin.get()


@contextmanager
def acting_as(
    principal: str | None,
    *,
    origin: RequestOrigin | None = None,
) -> Iterator[None]:
    """Temporarily bind a principal (and optionally an origin), e.g. for jobs."""
    principal_token = _current_principal.set(principal)
    origin_token = _current_origin.set(origin) if origin is not None else None
    try:
        yield
    finally:
        if origin_token is not None:
            _current_origin.reset(origin_token)
        _current_principal.reset(principal_token)


def _is_trusted_proxy(remote_ip: str) -> bool:
    """Check whether *remote_ip* falls within a configured trusted proxy CIDR."""
    settings = get_settings()
    try:
        addr = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    return any(
        addr in ipaddress.ip_network(cidr, strict=False) for cidr in settings.trusted_proxy_cidrs
    )


def get_client_ip(request: Request) -> str | None:
    """Extract the real client IP, only trusting proxy headers from known proxies."""
    connection_ip = request.client.host if request.client else None

    if connection_ip is None or not _is_trusted_proxy(connection_ip):
        return connection_ip

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # leftmost entry is the original client
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return connection_ip


class RequestOriginMiddleware(BaseHTTPMiddleware):
    """Record client IP and user agent for audit capture."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        token = _current_origin.set(
            RequestOrigin(
                ip_address=get_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        )
        try:
            return await call_next(request)
        finally:
            _current_origin.reset(token)
