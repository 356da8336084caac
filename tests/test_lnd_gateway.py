"""
LND REST invoice gateway tests against a mocked node (httpx.MockTransport).

Run with: pytest tests/test_lnd_gateway.py -v
"""

import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from lsat_gateway.errors import LSATError, LSAT_E_GATEWAY_UNAVAILABLE, LSAT_E_INVOICE_NOT_FOUND
from lsat_gateway.invoices import InMemoryInvoiceGateway, Invoice, LndRestInvoiceGateway

MACAROON_HEX = "0201036c6e6402f801"
PREIMAGE = b"\x42" * 32
R_HASH = hashlib.sha256(PREIMAGE).digest()
CREATED = 1768219200  # 2026-01-12T12:00:00Z


def _gateway(handler):
    return LndRestInvoiceGateway(
        "https://lnd.local:8080/",
        MACAROON_HEX,
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestLndCreateInvoice:

    @pytest.mark.asyncio
    async def test_create_invoice(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["macaroon"] = request.headers.get("Grpc-Metadata-macaroon")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "r_hash": base64.b64encode(R_HASH).decode(),
                "payment_request": "lnbcrt300n1pnode",
                "add_index": "1",
            })

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=600)
        invoice = await _gateway(handler).create_invoice(30, "LSAT access to /protected", expires_at)

        assert seen["method"] == "POST"
        assert seen["url"] == "https://lnd.local:8080/v1/invoices"
        assert seen["macaroon"] == MACAROON_HEX
        assert seen["body"]["value"] == "30"
        assert seen["body"]["memo"] == "LSAT access to /protected"
        assert 590 <= int(seen["body"]["expiry"]) <= 600

        assert invoice.payment_hash == R_HASH
        assert invoice.payment_request == "lnbcrt300n1pnode"
        assert invoice.amount_requested == 30
        assert not invoice.is_settled
        assert invoice.expires_at == expires_at

    @pytest.mark.asyncio
    async def test_incomplete_response_is_unavailable(self):
        gw = _gateway(lambda request: httpx.Response(200, json={"add_index": "1"}))
        with pytest.raises(LSATError) as ei:
            await gw.create_invoice(1, "x")
        assert ei.value.code == LSAT_E_GATEWAY_UNAVAILABLE


class TestLndGetInvoice:

    @pytest.mark.asyncio
    async def test_unsettled_invoice(self):
        def handler(request):
            assert request.url.path == f"/v1/invoice/{R_HASH.hex()}"
            return httpx.Response(200, json={
                "memo": "m",
                "value": "30",
                "settled": False,
                "state": "OPEN",
                "creation_date": str(CREATED),
                "settle_date": "0",
                "payment_request": "lnbcrt300n1pnode",
                "expiry": "3600",
                "amt_paid_sat": "0",
            })

        invoice = await _gateway(handler).get_invoice(R_HASH)
        assert not invoice.is_settled
        assert invoice.amount_paid is None
        assert invoice.settled_at is None
        assert invoice.created_at == datetime(2026, 1, 12, 12, 0, tzinfo=timezone.utc)
        assert invoice.expires_at == invoice.created_at + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_settled_invoice(self):
        def handler(request):
            return httpx.Response(200, json={
                "value": "30",
                "state": "SETTLED",
                "creation_date": str(CREATED),
                "settle_date": str(CREATED + 5),
                "payment_request": "lnbcrt300n1pnode",
                "amt_paid_sat": "45",
            })

        invoice = await _gateway(handler).get_invoice(R_HASH)
        assert invoice.is_settled
        assert invoice.amount_paid == 45
        assert invoice.amount_requested == 30
        assert invoice.settled_at == datetime(2026, 1, 12, 12, 0, 5, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_unknown_hash(self):
        gw = _gateway(lambda request: httpx.Response(404, json={"message": "unable to locate invoice"}))
        with pytest.raises(LSATError) as ei:
            await gw.get_invoice(R_HASH)
        assert ei.value.code == LSAT_E_INVOICE_NOT_FOUND
        assert ei.value.http_status == 401


class TestLndFailures:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [
        httpx.ConnectTimeout("timed out"),
        httpx.ReadTimeout("timed out"),
        httpx.ConnectError("refused"),
    ])
    async def test_transport_failures_are_unavailable(self, exc):
        def handler(request):
            raise exc

        with pytest.raises(LSATError) as ei:
            await _gateway(handler).get_invoice(R_HASH)
        assert ei.value.code == LSAT_E_GATEWAY_UNAVAILABLE
        assert ei.value.retryable
        assert ei.value.http_status == 503

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        gw = _gateway(lambda request: httpx.Response(500, text="internal"))
        with pytest.raises(LSATError) as ei:
            await gw.create_invoice(1, "x")
        assert ei.value.code == LSAT_E_GATEWAY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_non_json_body_is_unavailable(self):
        gw = _gateway(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(LSATError) as ei:
            await gw.get_invoice(R_HASH)
        assert ei.value.code == LSAT_E_GATEWAY_UNAVAILABLE


class TestInMemoryGateway:

    @pytest.mark.asyncio
    async def test_settlement_is_monotonic(self):
        gw = InMemoryInvoiceGateway()
        invoice = await gw.create_invoice(10, "d")
        assert not (await gw.get_invoice(invoice.payment_hash)).is_settled

        first = gw.settle(invoice.payment_hash, settled_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
        again = gw.settle(invoice.payment_hash, amount_paid=99)
        assert again == first
        assert (await gw.get_invoice(invoice.payment_hash)).amount_paid == 10

    @pytest.mark.asyncio
    async def test_preimage_matches_hash(self):
        gw = InMemoryInvoiceGateway()
        invoice = await gw.create_invoice(10, "d")
        assert hashlib.sha256(gw.preimage_for(invoice.payment_hash)).digest() == invoice.payment_hash

    @pytest.mark.asyncio
    async def test_unknown_and_unavailable(self):
        gw = InMemoryInvoiceGateway()
        with pytest.raises(LSATError) as ei:
            await gw.get_invoice(b"\x00" * 32)
        assert ei.value.code == LSAT_E_INVOICE_NOT_FOUND

        gw.available = False
        with pytest.raises(LSATError) as ei:
            await gw.create_invoice(1, "d")
        assert ei.value.code == LSAT_E_GATEWAY_UNAVAILABLE

    def test_invoice_dict(self):
        inv = Invoice(
            payment_hash=R_HASH,
            payment_request="lnbcrt1n1p",
            amount_requested=1,
            created_at=datetime(2026, 1, 12, tzinfo=timezone.utc),
        )
        d = inv.to_dict()
        assert d["id"] == R_HASH.hex()
        assert d["status"] == "unpaid"
        assert inv.settle(1, datetime(2026, 1, 12, 0, 1, tzinfo=timezone.utc)).to_dict()["status"] == "paid"
