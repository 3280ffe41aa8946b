"""
Decryption authorization token.

A minimal, syntactically valid but semantically empty transaction naming
the requester as sender. Key servers dry-run their access-control logic
against it instead of requiring a real transaction submission.

Encoding (BCS TransactionData::V1, 86 bytes):
    00                      TransactionData::V1
    00                      TransactionKind::ProgrammableTransaction
    00 00                   inputs = [], commands = []
    <32 bytes>              sender
    00                      gas payment = []
    <32 bytes>              gas owner (the sender)
    <u64 LE>                gas price
    <u64 LE>                gas budget
    00                      TransactionExpiration::None
"""

import struct
from dataclasses import dataclass

from .certificate import is_valid_address

TOKEN_LENGTH = 86
GAS_PRICE = 1000
GAS_BUDGET = 10_000_000

_PREFIX = b"\x00\x00\x00\x00"


def _address_bytes(address: str) -> bytes:
    if not is_valid_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return bytes.fromhex(address[2:])


@dataclass(frozen=True)
class AuthorizationToken:
    sender: str
    gas_owner: str
    gas_price: int = GAS_PRICE
    gas_budget: int = GAS_BUDGET

    def to_bytes(self) -> bytes:
        return (
            _PREFIX
            + _address_bytes(self.sender)
            + b"\x00"
            + _address_bytes(self.gas_owner)
            + struct.pack("<QQ", self.gas_price, self.gas_budget)
            + b"\x00"
        )

    @classmethod
    def parse(cls, raw: bytes) -> 'AuthorizationToken':
        """
        Decode a token. Only the empty-transaction shape is accepted.

        Raises:
            ValueError: on any other byte layout
        """
        if not isinstance(raw, (bytes, bytearray)) or len(raw) != TOKEN_LENGTH:
            raise ValueError(f"Authorization token must be {TOKEN_LENGTH} bytes")
        raw = bytes(raw)
        if raw[:4] != _PREFIX or raw[36] != 0 or raw[-1] != 0:
            raise ValueError("Authorization token is not an empty V1 transaction")
        gas_price, gas_budget = struct.unpack("<QQ", raw[69:85])
        return cls(
            sender="0x" + raw[4:36].hex(),
            gas_owner="0x" + raw[37:69].hex(),
            gas_price=gas_price,
            gas_budget=gas_budget,
        )


def build_authorization_token(sender: str) -> bytes:
    """Token naming `sender` as both transaction sender and gas owner."""
    address = sender.lower()
    return AuthorizationToken(sender=address, gas_owner=address).to_bytes()
