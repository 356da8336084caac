"""
Token minting, transport formats and signature tests.

Run with: pytest tests/test_tokens.py -v
"""

import hashlib
from datetime import datetime, timezone

import pytest
from pymacaroons import Macaroon

from lsat_gateway.caveats import Caveat
from lsat_gateway.context import RequestContext
from lsat_gateway.errors import (
    LSATError,
    LSAT_E_CAVEAT_PROVIDER,
    LSAT_E_INVALID_PREIMAGE,
    LSAT_E_INVALID_SIGNATURE,
    LSAT_E_MALFORMED_IDENTIFIER,
    LSAT_E_MALFORMED_TOKEN,
)
from lsat_gateway.identifier import Identifier
from lsat_gateway.invoices import Invoice
from lsat_gateway.tokens import (
    ORIGIN_PROVIDER,
    DerivedCaveat,
    StaticCaveat,
    Token,
    TokenMinter,
    is_lsat_authorization,
)

ROOT_KEY = b"\x07" * 32
PREIMAGE = b"\x2c" * 32
PAYMENT_HASH = hashlib.sha256(PREIMAGE).digest()


@pytest.fixture
def invoice():
    return Invoice(
        payment_hash=PAYMENT_HASH,
        payment_request="lnbcrt30n1ptestinvoice",
        amount_requested=30,
        created_at=datetime(2016, 8, 29, 9, 12, 33, tzinfo=timezone.utc),
        description="test",
    )


@pytest.fixture
def request_ctx():
    return RequestContext(method="GET", path="/protected", remote_addr="127.0.0.1")


@pytest.fixture
def minter():
    return TokenMinter(ROOT_KEY, location="localhost", seconds_per_unit=1)


def _caveat_strings(token: Token):
    return [c.encode() for c in token.caveats]


class TestMinting:

    def test_token_bound_to_invoice(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx)

        assert token.payment_hash == invoice.payment_hash
        assert token.payment_request == invoice.payment_request
        assert Identifier.from_hex(token.macaroon.identifier) == token.identifier
        assert token.macaroon.location == "localhost"

    def test_time_caveat_stores_rate_not_timestamp(self, invoice, request_ctx):
        token = TokenMinter(ROOT_KEY, seconds_per_unit=60).mint(invoice, request_ctx)
        assert _caveat_strings(token) == ["time=60"]

    def test_providers_appended_in_order(self, minter, invoice, request_ctx):
        m = TokenMinter(
            ROOT_KEY,
            providers=[
                DerivedCaveat(lambda req: Caveat("path", req.path)),
                StaticCaveat(Caveat("middleName", "danger")),
                DerivedCaveat(lambda req: ["a=1", Caveat("b", "2")]),
            ],
        )
        token = m.mint(invoice, request_ctx)
        assert _caveat_strings(token) == ["time=1", "path=/protected", "middleName=danger", "a=1", "b=2"]

    def test_get_caveats_replaces_providers(self, invoice, request_ctx):
        m = TokenMinter(
            ROOT_KEY,
            providers=[StaticCaveat(Caveat("middleName", "danger"))],
            get_caveats=lambda req: "only=this",
        )
        assert _caveat_strings(m.mint(invoice, request_ctx)) == ["time=1", "only=this"]

    def test_origin_provider(self, invoice):
        m = TokenMinter(ROOT_KEY, providers=[ORIGIN_PROVIDER])
        token = m.mint(invoice, RequestContext(headers={"x-forwarded-for": "182.39.28.11"}))
        assert _caveat_strings(token) == ["time=1", "ip=182.39.28.11"]

    def test_failing_provider_aborts_minting(self, invoice, request_ctx):
        def broken(req):
            raise KeyError("missing")

        m = TokenMinter(ROOT_KEY, providers=[StaticCaveat(Caveat("a", "1")), DerivedCaveat(broken)])
        with pytest.raises(LSATError) as ei:
            m.mint(invoice, request_ctx)
        assert ei.value.code == LSAT_E_CAVEAT_PROVIDER
        assert ei.value.details["provider"] == 1
        assert ei.value.http_status == 500

    def test_origin_provider_without_origin_fails(self, invoice):
        m = TokenMinter(ROOT_KEY, providers=[ORIGIN_PROVIDER])
        with pytest.raises(LSATError) as ei:
            m.mint(invoice, RequestContext())
        assert ei.value.code == LSAT_E_CAVEAT_PROVIDER

    def test_each_mint_has_fresh_identifier(self, minter, invoice, request_ctx):
        a = minter.mint(invoice, request_ctx)
        b = minter.mint(invoice, request_ctx)
        assert a.identifier.token_id != b.identifier.token_id


class TestSignature:

    def test_minted_token_verifies(self, minter, invoice, request_ctx):
        minter.verify_signature(minter.mint(invoice, request_ctx))

    def test_wrong_root_key_rejected(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx)
        other = TokenMinter(b"\x08" * 32)
        with pytest.raises(LSATError) as ei:
            other.verify_signature(token)
        assert ei.value.code == LSAT_E_INVALID_SIGNATURE
        assert ei.value.http_status == 401

    def test_holder_added_caveat_still_verifies(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx).add_caveat("expiration<1700000000")
        minter.verify_signature(token)
        assert _caveat_strings(token)[-1] == "expiration<1700000000"

    def test_stripping_a_caveat_breaks_signature(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx).add_caveat("expiration<1700000000")
        forged = Macaroon.deserialize(token.serialize())
        forged.caveats.pop()
        with pytest.raises(LSATError) as ei:
            minter.verify_signature(Token(forged))
        assert ei.value.code == LSAT_E_INVALID_SIGNATURE

    def test_foreign_macaroon_with_our_identifier_rejected(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx)
        forged = Macaroon(location="evil", identifier=token.macaroon.identifier, key=b"\x09" * 32)
        forged.add_first_party_caveat("time=100000")
        with pytest.raises(LSATError):
            minter.verify_signature(Token(forged))

    def test_add_caveat_returns_copy(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx)
        token.add_caveat("a=1")
        assert _caveat_strings(token) == ["time=1"]


class TestTransport:

    def test_challenge_roundtrip(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx)
        header = token.to_challenge()

        assert header.startswith('LSAT macaroon="')
        assert f'invoice="{invoice.payment_request}"' in header

        parsed = Token.from_challenge(header)
        assert parsed.serialize() == token.serialize()
        assert parsed.payment_request == invoice.payment_request

    def test_authorization_roundtrip_with_preimage(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx).with_preimage(PREIMAGE)
        header = token.to_token()
        assert header == f"LSAT {token.serialize()}:{PREIMAGE.hex()}"

        parsed = Token.from_authorization(header)
        assert parsed.preimage == PREIMAGE
        assert parsed.identifier == token.identifier
        parsed.check_preimage()

    def test_authorization_without_preimage(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx)
        parsed = Token.from_authorization(f"LSAT {token.serialize()}:")
        assert parsed.preimage is None
        parsed.check_preimage()

    def test_wrong_preimage_rejected(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx).with_preimage(b"\x00" * 32)
        with pytest.raises(LSATError) as ei:
            Token.from_authorization(token.to_token()).check_preimage()
        assert ei.value.code == LSAT_E_INVALID_PREIMAGE

    @pytest.mark.parametrize("header", [
        "LSAT :00",
        "LSAT %%%%:",
        "Bearer abc",
    ])
    def test_malformed_authorization(self, header):
        with pytest.raises(LSATError) as ei:
            Token.from_authorization(header)
        assert ei.value.code == LSAT_E_MALFORMED_TOKEN

    def test_non_hex_preimage_is_malformed(self, minter, invoice, request_ctx):
        token = minter.mint(invoice, request_ctx)
        with pytest.raises(LSATError) as ei:
            Token.from_authorization(f"LSAT {token.serialize()}:xyz")
        assert ei.value.code == LSAT_E_MALFORMED_TOKEN

    def test_macaroon_with_foreign_identifier_is_malformed(self):
        m = Macaroon(location="x", identifier="not-an-lsat-identifier", key=ROOT_KEY)
        with pytest.raises(LSATError) as ei:
            Token.from_authorization(f"LSAT {m.serialize()}:")
        assert ei.value.code == LSAT_E_MALFORMED_IDENTIFIER

    def test_scheme_detection(self):
        assert is_lsat_authorization("LSAT abc:def")
        assert is_lsat_authorization("lsat abc:def")
        assert not is_lsat_authorization("Bearer abc")
        assert not is_lsat_authorization("")
        assert not is_lsat_authorization(None)

    def test_bad_challenge_header(self):
        with pytest.raises(LSATError):
            Token.from_challenge('Basic realm="x"')
