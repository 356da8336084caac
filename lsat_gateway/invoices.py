"""
Invoice gateway: the payment-network collaborator.

The gateway creates invoices for challenges and reports settlement state for
a payment hash. Settlement is monotonic (unsettled -> settled, never back);
the gateway owns that transition, this package only reads it.

Backends:
- InMemoryInvoiceGateway: development/test node simulation. Payment is
  simulated with settle().
- LndRestInvoiceGateway: LND REST API over httpx.

All backends surface transport failures and timeouts as GATEWAY_UNAVAILABLE
and unknown hashes as INVOICE_NOT_FOUND. No retries are attempted here.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from .errors import (
    LSAT_E_GATEWAY_UNAVAILABLE,
    LSAT_E_INVOICE_NOT_FOUND,
    lsat_error,
)

logger = logging.getLogger("lsat_gateway.invoices")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _from_unix(value: Any) -> Optional[datetime]:
    try:
        ts = int(value)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass(frozen=True)
class Invoice:
    """A payment-network invoice as seen by the gateway."""

    payment_hash: bytes
    payment_request: str
    amount_requested: int
    created_at: datetime
    description: str = ""
    amount_paid: Optional[int] = None
    is_settled: bool = False
    settled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def payment_hash_hex(self) -> str:
        return self.payment_hash.hex()

    def settle(self, amount_paid: int, settled_at: datetime) -> "Invoice":
        """Return the settled version of this invoice.

        Settling an already-settled invoice returns it unchanged.
        """
        if self.is_settled:
            return self
        return replace(self, is_settled=True, amount_paid=int(amount_paid), settled_at=settled_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.payment_hash_hex,
            "payreq": self.payment_request,
            "amount": self.amount_requested,
            "amount_paid": self.amount_paid,
            "status": "paid" if self.is_settled else "unpaid",
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class InvoiceGateway(Protocol):
    """Interface consumed by the minter and middleware."""

    async def create_invoice(
        self,
        amount: int,
        description: str,
        expires_at: Optional[datetime] = None,
    ) -> Invoice: ...

    async def get_invoice(self, payment_hash: bytes) -> Invoice: ...


class InMemoryInvoiceGateway:
    """
    Simulated payment node.

    Invoices live in process memory keyed by payment hash. Each invoice gets
    a random preimage, so clients in tests can present a real proof of
    payment once `settle()` has been called.
    """

    def __init__(self, network: str = "bcrt"):
        self.network = network
        self.available = True
        self._invoices: Dict[bytes, Invoice] = {}
        self._preimages: Dict[bytes, bytes] = {}

    def _check_available(self) -> None:
        if not self.available:
            raise lsat_error(LSAT_E_GATEWAY_UNAVAILABLE, "payment node unavailable", retryable=True)

    async def create_invoice(
        self,
        amount: int,
        description: str,
        expires_at: Optional[datetime] = None,
    ) -> Invoice:
        self._check_available()
        preimage = secrets.token_bytes(32)
        payment_hash = hashlib.sha256(preimage).digest()
        invoice = Invoice(
            payment_hash=payment_hash,
            payment_request=f"ln{self.network}{int(amount)}n1p{payment_hash.hex()}",
            amount_requested=int(amount),
            created_at=_now_utc(),
            description=description,
            expires_at=expires_at,
        )
        self._invoices[payment_hash] = invoice
        self._preimages[payment_hash] = preimage
        logger.debug("created invoice %s for %d", payment_hash.hex(), amount)
        return invoice

    async def get_invoice(self, payment_hash: bytes) -> Invoice:
        self._check_available()
        invoice = self._invoices.get(payment_hash)
        if invoice is None:
            raise lsat_error(LSAT_E_INVOICE_NOT_FOUND, "unknown payment hash", payment_hash=payment_hash.hex())
        return invoice

    def settle(
        self,
        payment_hash: bytes,
        amount_paid: Optional[int] = None,
        settled_at: Optional[datetime] = None,
    ) -> Invoice:
        """Simulate payment of an invoice. Returns the settled invoice."""
        invoice = self._invoices.get(payment_hash)
        if invoice is None:
            raise lsat_error(LSAT_E_INVOICE_NOT_FOUND, "unknown payment hash", payment_hash=payment_hash.hex())
        paid = invoice.amount_requested if amount_paid is None else amount_paid
        settled = invoice.settle(paid, settled_at or _now_utc())
        self._invoices[payment_hash] = settled
        return settled

    def preimage_for(self, payment_hash: bytes) -> bytes:
        return self._preimages[payment_hash]


class LndRestInvoiceGateway:
    """
    Invoice gateway backed by an LND node's REST interface.

    Endpoints:
      POST /v1/invoices            {"value", "memo", "expiry"}
      GET  /v1/invoice/{r_hash}    settlement state
    Authentication is the node's invoice macaroon, hex-encoded, in the
    Grpc-Metadata-macaroon header.
    """

    def __init__(
        self,
        base_url: str,
        macaroon_hex: str,
        *,
        tls_cert_path: Optional[str] = None,
        timeout_seconds: float = 10.0,
        default_expiry_seconds: int = 3600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Grpc-Metadata-macaroon": macaroon_hex}
        self.verify: Any = tls_cert_path or True
        self.timeout_seconds = timeout_seconds
        self.default_expiry_seconds = default_expiry_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout_seconds,
            verify=self.verify,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Tuple[int, Dict[str, Any]]:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("LND %s %s timed out: %s", method, path, e)
            raise lsat_error(LSAT_E_GATEWAY_UNAVAILABLE, "payment node timed out", retryable=True) from e
        except httpx.HTTPError as e:
            logger.error("LND %s %s failed: %s: %s", method, path, type(e).__name__, e)
            raise lsat_error(LSAT_E_GATEWAY_UNAVAILABLE, "payment node unreachable", retryable=True) from e

        if resp.status_code == 404:
            return resp.status_code, {}
        if resp.status_code != 200:
            logger.error("LND %s %s returned %d: %s", method, path, resp.status_code, resp.text[:200])
            raise lsat_error(LSAT_E_GATEWAY_UNAVAILABLE, "payment node error", retryable=True)
        try:
            data = resp.json()
        except ValueError as e:
            logger.error("LND %s %s returned non-JSON body", method, path)
            raise lsat_error(LSAT_E_GATEWAY_UNAVAILABLE, "payment node error", retryable=True) from e
        return resp.status_code, data

    async def create_invoice(
        self,
        amount: int,
        description: str,
        expires_at: Optional[datetime] = None,
    ) -> Invoice:
        now = _now_utc()
        if expires_at is not None:
            expiry = max(1, int((expires_at - now).total_seconds()))
        else:
            expiry = self.default_expiry_seconds
            expires_at = now + timedelta(seconds=expiry)

        body = {"value": str(int(amount)), "memo": description, "expiry": str(expiry)}
        status, data = await self._request("POST", "/v1/invoices", json=body)
        if status == 404 or not data.get("r_hash") or not data.get("payment_request"):
            logger.error("LND invoice creation returned an incomplete response")
            raise lsat_error(LSAT_E_GATEWAY_UNAVAILABLE, "payment node error", retryable=True)

        return Invoice(
            payment_hash=base64.b64decode(data["r_hash"]),
            payment_request=data["payment_request"],
            amount_requested=int(amount),
            created_at=now,
            description=description,
            expires_at=expires_at,
        )

    async def get_invoice(self, payment_hash: bytes) -> Invoice:
        status, data = await self._request("GET", f"/v1/invoice/{payment_hash.hex()}")
        if status == 404:
            raise lsat_error(LSAT_E_INVOICE_NOT_FOUND, "unknown payment hash", payment_hash=payment_hash.hex())

        settled = bool(data.get("settled")) or data.get("state") == "SETTLED"
        created_at = _from_unix(data.get("creation_date")) or _now_utc()
        expiry = int(data.get("expiry") or 0)
        return Invoice(
            payment_hash=payment_hash,
            payment_request=str(data.get("payment_request", "")),
            amount_requested=int(data.get("value") or 0),
            created_at=created_at,
            description=str(data.get("memo", "")),
            amount_paid=int(data.get("amt_paid_sat") or 0) if settled else None,
            is_settled=settled,
            settled_at=_from_unix(data.get("settle_date")) if settled else None,
            expires_at=created_at + timedelta(seconds=expiry) if expiry else None,
        )
