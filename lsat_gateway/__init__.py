"""LSAT Gateway package.

Payment-gated access for HTTP routes using LSATs: macaroons bound to a
Lightning invoice, with caveats verified on every request.

- Challenge: 402 + `WWW-Authenticate: LSAT macaroon="...", invoice="..."`
- Access: `Authorization: LSAT <macaroon>:<preimage>` once the invoice is paid
- Time-based access proportional to amount paid, plus pluggable caveats

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from lsat_gateway import LSATAuthorizer, create_app
    from lsat_gateway import Token, TokenMinter, CaveatRegistry
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "LSATAuthorizer",
    "create_app",
    "GatewayConfig",
    "Token",
    "TokenMinter",
    "StaticCaveat",
    "DerivedCaveat",
    "Caveat",
    "CaveatRegistry",
    "Identifier",
    "LSATError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "LSATAuthorizer": ("lsat_gateway.middleware", "LSATAuthorizer"),
    "create_app": ("lsat_gateway.server", "create_app"),
    "GatewayConfig": ("lsat_gateway.config", "GatewayConfig"),
    "Token": ("lsat_gateway.tokens", "Token"),
    "TokenMinter": ("lsat_gateway.tokens", "TokenMinter"),
    "StaticCaveat": ("lsat_gateway.tokens", "StaticCaveat"),
    "DerivedCaveat": ("lsat_gateway.tokens", "DerivedCaveat"),
    "Caveat": ("lsat_gateway.caveats", "Caveat"),
    "CaveatRegistry": ("lsat_gateway.caveats", "CaveatRegistry"),
    "Identifier": ("lsat_gateway.identifier", "Identifier"),
    "LSATError": ("lsat_gateway.errors", "LSATError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'lsat_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
