"""Stable error taxonomy for the LSAT gateway.

Every decoding, verification and collaborator failure is raised as a single
exception type carrying a machine-readable `code`. The middleware maps each
code to a denial or challenge response; codes never change meaning.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `http_status` for the transport layer, `retryable` for clients.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Token / identifier decoding
LSAT_E_MALFORMED_IDENTIFIER = "MALFORMED_IDENTIFIER"
LSAT_E_MALFORMED_TOKEN = "MALFORMED_TOKEN"
LSAT_E_INVALID_SIGNATURE = "INVALID_SIGNATURE"
LSAT_E_INVALID_PREIMAGE = "INVALID_PREIMAGE"

# Invoice state
LSAT_E_INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
LSAT_E_INVOICE_UNSETTLED = "INVOICE_UNSETTLED"
LSAT_E_INVALID_AMOUNT = "INVALID_AMOUNT"

# Caveats
LSAT_E_UNKNOWN_CAVEAT = "UNKNOWN_CAVEAT"
LSAT_E_CAVEAT_VIOLATED = "CAVEAT_VIOLATED"
LSAT_E_CAVEAT_PROVIDER = "CAVEAT_PROVIDER_ERROR"
LSAT_E_ORIGIN_UNRESOLVED = "ORIGIN_UNRESOLVED"

# Generic
LSAT_E_BAD_REQUEST = "BAD_REQUEST"

# Collaborators / startup
LSAT_E_GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
LSAT_E_CONFIG_INVALID = "CONFIG_INVALID"


_DEFAULT_STATUS: Dict[str, int] = {
    LSAT_E_MALFORMED_IDENTIFIER: 400,
    LSAT_E_MALFORMED_TOKEN: 400,
    LSAT_E_INVALID_AMOUNT: 400,
    LSAT_E_BAD_REQUEST: 400,
    LSAT_E_INVALID_SIGNATURE: 401,
    LSAT_E_INVALID_PREIMAGE: 401,
    LSAT_E_INVOICE_NOT_FOUND: 401,
    LSAT_E_INVOICE_UNSETTLED: 402,
    LSAT_E_UNKNOWN_CAVEAT: 403,
    LSAT_E_CAVEAT_VIOLATED: 403,
    LSAT_E_ORIGIN_UNRESOLVED: 403,
    LSAT_E_CAVEAT_PROVIDER: 500,
    LSAT_E_CONFIG_INVALID: 500,
    LSAT_E_GATEWAY_UNAVAILABLE: 503,
}


@dataclass
class LSATError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def lsat_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int | None = None,
    **details: Any,
) -> LSATError:
    status = http_status if http_status is not None else _DEFAULT_STATUS.get(code, 400)
    return LSATError(code=code, message=message, retryable=retryable, http_status=status, details=details)
