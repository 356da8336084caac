"""
LSAT authorization middleware.

One linear decision per request:

    NO_TOKEN ──> create invoice ──> mint ──> CHALLENGE_ISSUED (402)
    TOKEN_PRESENT_UNVERIFIED
        ├─ undecodable header                      -> DENIED (400)
        ├─ bad signature / unknown invoice / preimage -> DENIED (401)
        ├─ invoice unsettled                       -> DENIED (402, challenge repeated)
        ├─ invoice expired unpaid                  -> CHALLENGE_ISSUED (402, fresh invoice)
        ├─ any caveat violated                     -> DENIED (403)
        └─ all caveats satisfied                   -> GRANTED

Payment latency is handled by the client re-presenting the same token once
paid; the server never blocks waiting for settlement. Payment node failures
become 503 responses without internal details.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import Request

from . import metrics
from .caveats import CaveatRegistry, VerificationContext, default_registry
from .config import GatewayConfig
from .context import RequestContext
from .errors import (
    LSAT_E_BAD_REQUEST,
    LSAT_E_GATEWAY_UNAVAILABLE,
    LSAT_E_INVOICE_UNSETTLED,
    LSATError,
    lsat_error,
)
from .invoices import Invoice, InvoiceGateway
from .tokens import ORIGIN_PROVIDER, Token, TokenMinter, is_lsat_authorization

logger = logging.getLogger("lsat_gateway")

AUTHORIZATION_HEADER = "authorization"
CHALLENGE_HEADER = "WWW-Authenticate"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _log_abandoned_invoice(task: "asyncio.Future") -> None:
    """Consume the outcome of an invoice creation nobody is waiting for."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("abandoned invoice creation failed: %s", exc)
    else:
        logger.info("abandoned invoice %s dropped", task.result().payment_hash_hex)


class AuthState(str, Enum):
    NO_TOKEN = "NO_TOKEN"
    CHALLENGE_ISSUED = "CHALLENGE_ISSUED"
    TOKEN_PRESENT_UNVERIFIED = "TOKEN_PRESENT_UNVERIFIED"
    GRANTED = "GRANTED"
    DENIED = "DENIED"


@dataclass
class AuthDecision:
    """Terminal outcome of authorizing one request."""

    state: AuthState
    status_code: int
    code: str = "OK"
    message: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    token: Optional[Token] = None
    invoice: Optional[Invoice] = None

    @property
    def granted(self) -> bool:
        return self.state is AuthState.GRANTED

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.invoice is not None and not self.granted:
            d["invoice"] = {"id": self.invoice.payment_hash_hex, "payreq": self.invoice.payment_request}
        return d


class LSATDenied(Exception):
    """Raised by the FastAPI dependency when a request is not granted."""

    def __init__(self, decision: AuthDecision):
        super().__init__(decision.code)
        self.decision = decision


class LSATAuthorizer:
    """
    Request authorizer: issues challenges and verifies presented tokens.

    Holds only immutable state (config, frozen registry, minter) so a single
    instance serves concurrent requests.
    """

    def __init__(
        self,
        config: GatewayConfig,
        invoice_gateway: InvoiceGateway,
        registry: Optional[CaveatRegistry] = None,
    ):
        self.config = config
        self.invoice_gateway = invoice_gateway
        self.registry = (registry or default_registry(include_origin=config.origin_caveat)).freeze()

        providers = tuple(config.caveat_providers)
        if config.origin_caveat:
            providers = (ORIGIN_PROVIDER,) + providers
        self.minter = TokenMinter(
            config.root_key,
            location=config.location,
            seconds_per_unit=config.seconds_per_unit,
            providers=providers,
            get_caveats=config.get_caveats,
        )

    # ---------------------------
    # Entry point
    # ---------------------------

    async def authorize(self, request: RequestContext) -> AuthDecision:
        header = request.header(AUTHORIZATION_HEADER)
        if not is_lsat_authorization(header):
            state = AuthState.NO_TOKEN
        else:
            state = AuthState.TOKEN_PRESENT_UNVERIFIED

        try:
            if state is AuthState.NO_TOKEN:
                decision = await self.issue_challenge(request)
            else:
                decision = await self.verify(request, header)
        except LSATError as e:
            decision = self._deny(e)

        metrics.record_decision(decision.state.value, decision.code)
        return decision

    def _deny(self, e: LSATError, **kwargs: Any) -> AuthDecision:
        if e.code == LSAT_E_GATEWAY_UNAVAILABLE:
            metrics.record_gateway_error("authorize")
            logger.error("payment node unavailable: %s", e)
            return AuthDecision(
                state=AuthState.DENIED,
                status_code=e.http_status,
                code=e.code,
                message="payment service temporarily unavailable",
            )
        logger.warning("request denied: %s", e)
        return AuthDecision(state=AuthState.DENIED, status_code=e.http_status, code=e.code, message=e.message, **kwargs)

    # ---------------------------
    # NO_TOKEN
    # ---------------------------

    def requested_amount(self, request: RequestContext) -> int:
        amount = request.query.get("amount")
        if amount is None:
            amount = request.body.get("amount")
        if amount is None:
            return self.config.default_amount
        return self.config.check_amount(amount)

    async def create_invoice(self, request: RequestContext, amount: Optional[int] = None) -> Invoice:
        if amount is None:
            amount = self.requested_amount(request)
        else:
            amount = self.config.check_amount(amount)
        expires_at = _now_utc() + timedelta(seconds=self.config.invoice_expiry_seconds)
        description = self.config.get_invoice_description(request)
        # Invoice creation must not be abandoned half-way if the client
        # disconnects; the result is simply dropped.
        task = asyncio.ensure_future(self.invoice_gateway.create_invoice(amount, description, expires_at))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_log_abandoned_invoice)
            raise

    async def issue_challenge(self, request: RequestContext) -> AuthDecision:
        invoice = await self.create_invoice(request)
        token = self.minter.mint(invoice, request)
        metrics.record_challenge()
        logger.info("issued challenge for %s %s (invoice %s)", request.method, request.path, invoice.payment_hash_hex)
        return AuthDecision(
            state=AuthState.CHALLENGE_ISSUED,
            status_code=402,
            code="PAYMENT_REQUIRED",
            message="payment required",
            headers={CHALLENGE_HEADER: token.to_challenge()},
            token=token,
            invoice=invoice,
        )

    # ---------------------------
    # TOKEN_PRESENT_UNVERIFIED
    # ---------------------------

    async def verify(self, request: RequestContext, header: Optional[str]) -> AuthDecision:
        token = Token.from_authorization(header or "")
        self.minter.verify_signature(token)
        caveats = token.caveats
        token.check_preimage()

        invoice = await self.invoice_gateway.get_invoice(token.payment_hash)
        if not invoice.is_settled:
            if invoice.expires_at is not None and invoice.expires_at <= _now_utc():
                logger.info("invoice %s expired unpaid; issuing a new challenge", invoice.payment_hash_hex)
                return await self.issue_challenge(request)
            token.payment_request = invoice.payment_request
            return self._deny(
                lsat_error(LSAT_E_INVOICE_UNSETTLED, "invoice has not been paid", payment_hash=invoice.payment_hash_hex),
                headers={CHALLENGE_HEADER: token.to_challenge()},
                token=token,
                invoice=invoice,
            )

        ctx = VerificationContext(
            now=_now_utc(),
            invoice=invoice,
            identifier=token.identifier,
            request=request,
            caveats=tuple(caveats),
        )
        violation = self.registry.first_violation(caveats, ctx)
        if violation is not None:
            return self._deny(lsat_error(violation.code, violation.reason), token=token)

        logger.info("granted %s %s (invoice %s)", request.method, request.path, invoice.payment_hash_hex)
        return AuthDecision(state=AuthState.GRANTED, status_code=200, token=token, invoice=invoice)

    # ---------------------------
    # FastAPI integration
    # ---------------------------

    async def require(self, request: Request) -> AuthDecision:
        """FastAPI dependency guarding a route or router.

        On success the decision is also stored on `request.state.lsat`.
        """
        body: Dict[str, Any] = {}
        content_type = request.headers.get("content-type", "")
        if request.method in ("POST", "PUT", "PATCH") and content_type.startswith("application/json"):
            raw = await request.body()
            if raw:
                try:
                    parsed = await request.json()
                except ValueError as e:
                    raise LSATDenied(self._deny(lsat_error(LSAT_E_BAD_REQUEST, "request body is not valid JSON"))) from e
                if isinstance(parsed, dict):
                    body = parsed

        decision = await self.authorize(RequestContext.from_starlette(request, body=body))
        if not decision.granted:
            raise LSATDenied(decision)
        request.state.lsat = decision
        return decision
