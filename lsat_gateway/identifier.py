"""
Token identifier codec.

The identifier is the fixed binary payload a macaroon is built around. It
binds the token to exactly one invoice (by payment hash) and carries a random
token id so two tokens for the same invoice never collide.

Layout (version 0, 66 bytes, big-endian):

    +---------+------------------+------------------+
    | version | payment_hash     | token_id         |
    | 2 bytes | 32 bytes         | 32 bytes         |
    +---------+------------------+------------------+

Inside a macaroon the identifier travels hex-encoded.
"""

from __future__ import annotations

import secrets
import struct
from dataclasses import dataclass, field

from .errors import LSAT_E_MALFORMED_IDENTIFIER, lsat_error

LATEST_VERSION = 0
SUPPORTED_VERSIONS = frozenset({0})

PAYMENT_HASH_SIZE = 32
TOKEN_ID_SIZE = 32

_HEADER = struct.Struct(">H")
ENCODED_SIZE = _HEADER.size + PAYMENT_HASH_SIZE + TOKEN_ID_SIZE


def new_token_id() -> bytes:
    return secrets.token_bytes(TOKEN_ID_SIZE)


@dataclass(frozen=True)
class Identifier:
    """Identifier embedded in every minted token."""

    payment_hash: bytes
    token_id: bytes = field(default_factory=new_token_id)
    version: int = LATEST_VERSION

    def __post_init__(self):
        if self.version not in SUPPORTED_VERSIONS:
            raise lsat_error(
                LSAT_E_MALFORMED_IDENTIFIER,
                f"unsupported identifier version {self.version}",
                version=self.version,
            )
        if len(self.payment_hash) != PAYMENT_HASH_SIZE:
            raise lsat_error(
                LSAT_E_MALFORMED_IDENTIFIER,
                f"payment hash must be {PAYMENT_HASH_SIZE} bytes",
                length=len(self.payment_hash),
            )
        if len(self.token_id) != TOKEN_ID_SIZE:
            raise lsat_error(
                LSAT_E_MALFORMED_IDENTIFIER,
                f"token id must be {TOKEN_ID_SIZE} bytes",
                length=len(self.token_id),
            )

    @property
    def payment_hash_hex(self) -> str:
        return self.payment_hash.hex()

    def encode(self) -> bytes:
        return _HEADER.pack(self.version) + self.payment_hash + self.token_id

    def to_hex(self) -> str:
        return self.encode().hex()

    @classmethod
    def decode(cls, data: bytes) -> "Identifier":
        if len(data) < _HEADER.size:
            raise lsat_error(LSAT_E_MALFORMED_IDENTIFIER, "identifier too short", length=len(data))
        (version,) = _HEADER.unpack_from(data)
        if version not in SUPPORTED_VERSIONS:
            raise lsat_error(
                LSAT_E_MALFORMED_IDENTIFIER,
                f"unsupported identifier version {version}",
                version=version,
            )
        if len(data) != ENCODED_SIZE:
            raise lsat_error(
                LSAT_E_MALFORMED_IDENTIFIER,
                f"identifier must be {ENCODED_SIZE} bytes",
                length=len(data),
            )
        offset = _HEADER.size
        payment_hash = data[offset:offset + PAYMENT_HASH_SIZE]
        token_id = data[offset + PAYMENT_HASH_SIZE:]
        return cls(payment_hash=payment_hash, token_id=token_id, version=version)

    @classmethod
    def from_hex(cls, text: str) -> "Identifier":
        try:
            raw = bytes.fromhex(text)
        except (TypeError, ValueError) as exc:
            raise lsat_error(LSAT_E_MALFORMED_IDENTIFIER, "identifier is not valid hex") from exc
        return cls.decode(raw)


def encode(identifier: Identifier) -> bytes:
    return identifier.encode()


def decode(data: bytes) -> Identifier:
    return Identifier.decode(data)
