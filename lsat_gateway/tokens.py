"""
LSAT tokens and the token minter.

An LSAT is a macaroon whose identifier binds it to one invoice, paired with
the invoice's payment request (in a challenge) or the payment preimage (in an
Authorization header).

Security properties:
- HMAC-chained macaroon signature over identifier + ordered caveats
  (pymacaroons); caveats can be appended by a holder but never removed
- identifier carries the payment hash, so every token maps to one invoice
- minting is all-or-nothing: a failing caveat provider aborts issuance

Wire formats:
    WWW-Authenticate: LSAT macaroon="<base64>", invoice="<payment request>"
    Authorization:    LSAT <base64>:<hex preimage>
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from pymacaroons import Macaroon, Verifier

from .caveats import Caveat, origin_caveat, time_caveat
from .context import RequestContext
from .errors import (
    LSAT_E_CAVEAT_PROVIDER,
    LSAT_E_INVALID_PREIMAGE,
    LSAT_E_INVALID_SIGNATURE,
    LSAT_E_MALFORMED_TOKEN,
    LSATError,
    lsat_error,
)
from .identifier import Identifier
from .invoices import Invoice

logger = logging.getLogger("lsat_gateway.tokens")

SCHEME = "LSAT"

_CHALLENGE_RE = re.compile(
    r'^\s*LSAT\s+macaroon="(?P<macaroon>[^"]+)"\s*,\s*invoice="(?P<invoice>[^"]+)"\s*$',
    re.IGNORECASE,
)

CaveatLike = Union[Caveat, str]


def is_lsat_authorization(header: Optional[str]) -> bool:
    return bool(header) and header.strip()[: len(SCHEME) + 1].upper() == SCHEME + " "


def _as_caveats(value: Union[CaveatLike, Sequence[CaveatLike], None]) -> List[Caveat]:
    if value is None:
        return []
    if isinstance(value, (Caveat, str)):
        value = [value]
    return [c if isinstance(c, Caveat) else Caveat.decode(c) for c in value]


# ---------------------------
# Caveat providers
# ---------------------------

@dataclass(frozen=True)
class StaticCaveat:
    """A caveat attached verbatim to every minted token."""

    caveat: Caveat

    def evaluate(self, request: RequestContext) -> List[Caveat]:
        return [self.caveat]


@dataclass(frozen=True)
class DerivedCaveat:
    """A caveat computed from the request a token is minted for."""

    fn: Callable[[RequestContext], Union[CaveatLike, Sequence[CaveatLike]]]

    def evaluate(self, request: RequestContext) -> List[Caveat]:
        return _as_caveats(self.fn(request))


CaveatProvider = Union[StaticCaveat, DerivedCaveat]

ORIGIN_PROVIDER = DerivedCaveat(origin_caveat)


# ---------------------------
# Token
# ---------------------------

class Token:
    """A macaroon bound to an invoice, plus its transport companions."""

    def __init__(self, macaroon: Macaroon, payment_request: str = "", preimage: Optional[bytes] = None):
        self.macaroon = macaroon
        self.payment_request = payment_request
        self.preimage = preimage
        try:
            self.identifier = Identifier.from_hex(macaroon.identifier)
        except LSATError:
            raise
        except Exception as exc:
            raise lsat_error(LSAT_E_MALFORMED_TOKEN, "macaroon identifier is unreadable") from exc

    @property
    def payment_hash(self) -> bytes:
        return self.identifier.payment_hash

    @property
    def caveats(self) -> List[Caveat]:
        """Caveats in chain order."""
        out: List[Caveat] = []
        for c in self.macaroon.caveats:
            if not c.first_party():
                raise lsat_error(LSAT_E_MALFORMED_TOKEN, "third-party caveats are not supported")
            caveat_id = c.caveat_id
            if isinstance(caveat_id, bytes):
                caveat_id = caveat_id.decode("utf-8", "replace")
            out.append(Caveat.decode(caveat_id))
        return out

    def serialize(self) -> str:
        return self.macaroon.serialize()

    def add_caveat(self, caveat: CaveatLike) -> "Token":
        """Return a copy of this token with one more caveat appended."""
        copy = Macaroon.deserialize(self.macaroon.serialize())
        c = caveat if isinstance(caveat, Caveat) else Caveat.decode(caveat)
        copy.add_first_party_caveat(c.encode())
        return Token(copy, payment_request=self.payment_request, preimage=self.preimage)

    def with_preimage(self, preimage: bytes) -> "Token":
        return Token(self.macaroon, payment_request=self.payment_request, preimage=preimage)

    def verify_signature(self, root_key: bytes) -> None:
        """Check the HMAC chain. Caveat predicates are checked separately."""
        verifier = Verifier()
        verifier.satisfy_general(lambda _: True)
        try:
            verifier.verify(self.macaroon, root_key)
        except Exception as exc:
            raise lsat_error(LSAT_E_INVALID_SIGNATURE, "macaroon signature is invalid") from exc

    def check_preimage(self) -> None:
        """If a preimage is attached, it must hash to the payment hash."""
        if self.preimage is None:
            return
        digest = hashlib.sha256(self.preimage).digest()
        if not hmac.compare_digest(digest, self.payment_hash):
            raise lsat_error(LSAT_E_INVALID_PREIMAGE, "preimage does not match payment hash")

    def to_challenge(self) -> str:
        return f'{SCHEME} macaroon="{self.serialize()}", invoice="{self.payment_request}"'

    def to_token(self) -> str:
        proof = self.preimage.hex() if self.preimage else ""
        return f"{SCHEME} {self.serialize()}:{proof}"

    @classmethod
    def deserialize(cls, data: str, **kwargs) -> "Token":
        try:
            macaroon = Macaroon.deserialize(data)
        except Exception as exc:
            raise lsat_error(LSAT_E_MALFORMED_TOKEN, "token is not a valid macaroon") from exc
        return cls(macaroon, **kwargs)

    @classmethod
    def from_challenge(cls, header: str) -> "Token":
        m = _CHALLENGE_RE.match(header or "")
        if not m:
            raise lsat_error(LSAT_E_MALFORMED_TOKEN, "not an LSAT challenge")
        return cls.deserialize(m.group("macaroon"), payment_request=m.group("invoice"))

    @classmethod
    def from_authorization(cls, header: str) -> "Token":
        if not is_lsat_authorization(header):
            raise lsat_error(LSAT_E_MALFORMED_TOKEN, "authorization scheme is not LSAT")
        payload = header.strip()[len(SCHEME):].strip()
        macaroon_b64, sep, proof = payload.rpartition(":")
        if not sep:
            macaroon_b64, proof = payload, ""
        if not macaroon_b64:
            raise lsat_error(LSAT_E_MALFORMED_TOKEN, "missing macaroon")
        preimage = None
        if proof:
            try:
                preimage = bytes.fromhex(proof)
            except ValueError as exc:
                raise lsat_error(LSAT_E_MALFORMED_TOKEN, "preimage must be hex") from exc
        return cls.deserialize(macaroon_b64, preimage=preimage)


# ---------------------------
# Minter
# ---------------------------

class TokenMinter:
    """
    Mints tokens around invoices.

    Every token carries the time caveat first, then the provider caveats in
    order. `get_caveats`, when given, replaces the configured providers.
    """

    def __init__(
        self,
        root_key: bytes,
        *,
        location: str = "lsat-gateway",
        seconds_per_unit: int = 1,
        providers: Sequence[CaveatProvider] = (),
        get_caveats: Optional[Callable[[RequestContext], Union[CaveatLike, Sequence[CaveatLike]]]] = None,
    ):
        if not root_key:
            raise ValueError("root_key is required")
        self._root_key = bytes(root_key)
        self.location = location
        self.seconds_per_unit = int(seconds_per_unit)
        self.providers: tuple = tuple(providers)
        self.get_caveats = get_caveats

    def _provider_caveats(self, request: RequestContext) -> List[Caveat]:
        if self.get_caveats is not None:
            providers: Sequence[CaveatProvider] = (DerivedCaveat(self.get_caveats),)
        else:
            providers = self.providers
        caveats: List[Caveat] = []
        for index, provider in enumerate(providers):
            try:
                caveats.extend(provider.evaluate(request))
            except Exception as e:
                logger.error("caveat provider %d failed: %s: %s", index, type(e).__name__, e)
                raise lsat_error(
                    LSAT_E_CAVEAT_PROVIDER,
                    "caveat provider failed",
                    provider=index,
                    error=type(e).__name__,
                ) from e
        return caveats

    def mint(self, invoice: Invoice, request: Optional[RequestContext] = None) -> Token:
        request = request or RequestContext()
        identifier = Identifier(payment_hash=invoice.payment_hash)
        caveats = [time_caveat(self.seconds_per_unit)] + self._provider_caveats(request)

        macaroon = Macaroon(location=self.location, identifier=identifier.to_hex(), key=self._root_key)
        for caveat in caveats:
            macaroon.add_first_party_caveat(caveat.encode())

        logger.debug("minted token for %s with %d caveats", invoice.payment_hash_hex, len(caveats))
        return Token(macaroon, payment_request=invoice.payment_request)

    def verify_signature(self, token: Token) -> None:
        token.verify_signature(self._root_key)
