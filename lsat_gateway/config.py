"""Gateway configuration.

Configuration is explicit and immutable: one GatewayConfig is built at
startup and handed to the minter and authorizer. Nothing reads the
environment after that.

Env vars:
  - LSAT_ROOT_KEY: hex root key for macaroon signing (>= 32 bytes)
  - LSAT_ALLOW_EPHEMERAL_ROOT_KEY: generate a random root key if unset (dev/tests)
  - LSAT_LOCATION: macaroon location
  - LSAT_SECONDS_PER_UNIT: seconds of access per unit paid (>= 1)
  - LSAT_MIN_AMOUNT / LSAT_MAX_AMOUNT / LSAT_DEFAULT_AMOUNT: invoice amounts
  - LSAT_INVOICE_EXPIRY_SECONDS: challenge invoice lifetime
  - LSAT_ORIGIN_CAVEAT: bind tokens to the client IP they were minted for
  - LSAT_INVOICE_BACKEND: memory | lnd
  - LND_REST_URL, LND_MACAROON_HEX, LND_TLS_CERT_PATH: LND REST backend
  - LSAT_GATEWAY_TIMEOUT_SECONDS: payment node request timeout
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Tuple

from .context import RequestContext
from .errors import LSAT_E_CONFIG_INVALID, LSAT_E_INVALID_AMOUNT, LSATError, lsat_error

logger = logging.getLogger("lsat_gateway.config")

ENV_ROOT_KEY = "LSAT_ROOT_KEY"
ENV_ALLOW_EPHEMERAL = "LSAT_ALLOW_EPHEMERAL_ROOT_KEY"

MIN_ROOT_KEY_BYTES = 32


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise lsat_error(LSAT_E_CONFIG_INVALID, f"{name} must be an integer", variable=name) from e


def default_invoice_description(request: RequestContext) -> str:
    return f"LSAT access to {request.path}"


@dataclass(frozen=True)
class GatewayConfig:
    """Immutable gateway configuration."""

    root_key: bytes = field(repr=False)
    location: str = "lsat-gateway"
    seconds_per_unit: int = 1
    min_amount: int = 1
    max_amount: Optional[int] = None
    default_amount: int = 1
    invoice_expiry_seconds: int = 3600
    origin_caveat: bool = False
    caveat_providers: Tuple[Any, ...] = ()
    get_caveats: Optional[Callable[[RequestContext], Any]] = None
    get_invoice_description: Callable[[RequestContext], str] = default_invoice_description
    invoice_backend: str = "memory"
    lnd_rest_url: str = ""
    lnd_macaroon_hex: str = field(default="", repr=False)
    lnd_tls_cert_path: Optional[str] = None
    gateway_timeout_seconds: float = 10.0

    def __post_init__(self):
        if len(self.root_key) < MIN_ROOT_KEY_BYTES:
            raise lsat_error(LSAT_E_CONFIG_INVALID, f"root key must be at least {MIN_ROOT_KEY_BYTES} bytes")
        if self.seconds_per_unit < 1:
            raise lsat_error(LSAT_E_CONFIG_INVALID, "seconds_per_unit must be >= 1")
        if self.min_amount < 1:
            raise lsat_error(LSAT_E_CONFIG_INVALID, "min_amount must be >= 1")
        if self.max_amount is not None and self.max_amount < self.min_amount:
            raise lsat_error(LSAT_E_CONFIG_INVALID, "max_amount must be >= min_amount")
        if self.invoice_backend not in ("memory", "lnd"):
            raise lsat_error(LSAT_E_CONFIG_INVALID, f"unknown invoice backend {self.invoice_backend!r}")
        if self.invoice_backend == "lnd" and not (self.lnd_rest_url and self.lnd_macaroon_hex):
            raise lsat_error(LSAT_E_CONFIG_INVALID, "lnd backend requires LND_REST_URL and LND_MACAROON_HEX")
        try:
            self.check_amount(self.default_amount)
        except LSATError as e:
            raise lsat_error(LSAT_E_CONFIG_INVALID, f"default_amount is not requestable: {e.message}") from e

    def check_amount(self, amount: Any) -> int:
        """Validate a requested invoice amount; returns it as int."""
        if isinstance(amount, bool):
            raise lsat_error(LSAT_E_INVALID_AMOUNT, "amount must be an integer", amount=str(amount))
        try:
            value = int(amount)
        except (TypeError, ValueError) as e:
            raise lsat_error(LSAT_E_INVALID_AMOUNT, "amount must be an integer", amount=str(amount)) from e
        if isinstance(amount, float) and amount != value:
            raise lsat_error(LSAT_E_INVALID_AMOUNT, "amount must be an integer", amount=str(amount))
        if value < self.min_amount:
            raise lsat_error(LSAT_E_INVALID_AMOUNT, f"amount below minimum {self.min_amount}", amount=value)
        if self.max_amount is not None and value > self.max_amount:
            raise lsat_error(LSAT_E_INVALID_AMOUNT, f"amount above maximum {self.max_amount}", amount=value)
        return value

    @classmethod
    def load_from_env(
        cls,
        *,
        caveat_providers: Sequence[Any] = (),
        get_caveats: Optional[Callable[[RequestContext], Any]] = None,
        get_invoice_description: Optional[Callable[[RequestContext], str]] = None,
    ) -> "GatewayConfig":
        """Build configuration from env vars.

        Present-but-malformed values raise CONFIG_INVALID rather than falling
        back to defaults.
        """
        raw_key = (os.getenv(ENV_ROOT_KEY, "") or "").strip()
        if raw_key:
            try:
                root_key = bytes.fromhex(raw_key)
            except ValueError as e:
                raise lsat_error(LSAT_E_CONFIG_INVALID, f"{ENV_ROOT_KEY} must be hex") from e
        elif _env_bool(ENV_ALLOW_EPHEMERAL):
            logger.warning("%s not set; using an ephemeral root key (tokens will not survive restarts)", ENV_ROOT_KEY)
            root_key = secrets.token_bytes(MIN_ROOT_KEY_BYTES)
        else:
            raise lsat_error(
                LSAT_E_CONFIG_INVALID,
                f"No root key configured. Set {ENV_ROOT_KEY}, or {ENV_ALLOW_EPHEMERAL}=1 for demos/tests.",
            )

        min_amount = _env_int("LSAT_MIN_AMOUNT", 1)
        timeout_raw = (os.getenv("LSAT_GATEWAY_TIMEOUT_SECONDS", "") or "").strip()
        try:
            timeout = float(timeout_raw) if timeout_raw else 10.0
        except ValueError as e:
            raise lsat_error(LSAT_E_CONFIG_INVALID, "LSAT_GATEWAY_TIMEOUT_SECONDS must be a number") from e

        return cls(
            root_key=root_key,
            location=os.getenv("LSAT_LOCATION", "lsat-gateway").strip() or "lsat-gateway",
            seconds_per_unit=_env_int("LSAT_SECONDS_PER_UNIT", 1),
            min_amount=min_amount,
            max_amount=_env_int("LSAT_MAX_AMOUNT", None),
            default_amount=_env_int("LSAT_DEFAULT_AMOUNT", min_amount),
            invoice_expiry_seconds=_env_int("LSAT_INVOICE_EXPIRY_SECONDS", 3600),
            origin_caveat=_env_bool("LSAT_ORIGIN_CAVEAT"),
            caveat_providers=tuple(caveat_providers),
            get_caveats=get_caveats,
            get_invoice_description=get_invoice_description or default_invoice_description,
            invoice_backend=(os.getenv("LSAT_INVOICE_BACKEND", "memory") or "memory").strip().lower(),
            lnd_rest_url=(os.getenv("LND_REST_URL", "") or "").strip(),
            lnd_macaroon_hex=(os.getenv("LND_MACAROON_HEX", "") or "").strip(),
            lnd_tls_cert_path=(os.getenv("LND_TLS_CERT_PATH", "") or "").strip() or None,
            gateway_timeout_seconds=timeout,
        )
