"""
Normalized request context.

Frameworks expose client addresses in different places. The boundary adapter
fills one RequestContext per request, and everything downstream (caveat
providers, verifiers, origin resolution) reads that fixed shape.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import LSAT_E_ORIGIN_UNRESOLVED, lsat_error

HeaderValue = Union[str, List[str]]

FORWARDED_FOR_HEADER = "x-forwarded-for"


@dataclass(frozen=True)
class RequestContext:
    """Read-only facts about one incoming request.

    headers: lower-cased header names.
    ip: client address already resolved by the framework (e.g. proxy-aware).
    remote_addr: address of the raw connection peer.
    """

    method: str = "GET"
    path: str = "/"
    headers: Mapping[str, HeaderValue] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    body: Mapping[str, Any] = field(default_factory=dict)
    ip: Optional[str] = None
    remote_addr: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        """First value of a header, or None."""
        value = self.headers.get(name.lower())
        if isinstance(value, list):
            return value[0] if value else None
        return value

    @classmethod
    def from_starlette(cls, request: Any, body: Optional[Mapping[str, Any]] = None) -> "RequestContext":
        """Build a context from a Starlette/FastAPI request."""
        headers: Dict[str, HeaderValue] = {}
        for key, value in request.headers.items():
            key = key.lower()
            existing = headers.get(key)
            if existing is None:
                headers[key] = value
            elif isinstance(existing, list):
                existing.append(value)
            else:
                headers[key] = [existing, value]
        client = getattr(request, "client", None)
        return cls(
            method=request.method,
            path=request.url.path,
            headers=headers,
            query=dict(request.query_params),
            body=dict(body or {}),
            ip=getattr(request.state, "client_ip", None),
            remote_addr=client.host if client else None,
        )


def _first_forwarded(value: Optional[HeaderValue]) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, list):
        value = value[0] if value else ""
    first = value.split(",")[0].strip()
    return first or None


def resolve_origin(ctx: RequestContext) -> str:
    """Resolve the client IP for a request.

    Precedence: forwarded-for header (first entry), framework-resolved ip,
    raw connection address. Raises ORIGIN_UNRESOLVED when nothing is present
    or the chosen value is not an IP address.
    """
    candidate = (
        _first_forwarded(ctx.headers.get(FORWARDED_FOR_HEADER))
        or ctx.ip
        or ctx.remote_addr
    )
    if not candidate:
        raise lsat_error(LSAT_E_ORIGIN_UNRESOLVED, "could not determine client origin")
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError as exc:
        raise lsat_error(LSAT_E_ORIGIN_UNRESOLVED, "client origin is not a valid IP address", origin=candidate) from exc
