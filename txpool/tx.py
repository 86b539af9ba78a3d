"""Raw transaction helpers: keys, wire sizes and sender information."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass

TX_KEY_SIZE = hashlib.sha256().digest_size

_MAX_SENDER_ID = 0xFFFF


@dataclass(frozen=True)
class TxInfo:
    """Parameters passed along when a transaction is offered to the mempool.

    ``sender_id`` is the compact internal peer ID (an unsigned 16-bit value);
    ``sender_p2p_id`` is the full peer identifier, used for logging.
    """

    sender_id: int = 0
    sender_p2p_id: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.sender_id <= _MAX_SENDER_ID:
            raise ValueError(
                f"sender id {self.sender_id} does not fit in 16 bits"
            )


def tx_key(tx: bytes) -> bytes:
    """Return the fixed-length key (SHA-256 digest) identifying ``tx``."""
    return hashlib.sha256(bytes(tx)).digest()


def _uvarint_size(value: int) -> int:
    size = 1
    while value >= 0x80:
        value >>= 7
        size += 1
    return size


def compute_proto_size_for_txs(txs: Iterable[bytes]) -> int:
    """Return the protobuf-encoded size of ``txs`` as a repeated bytes field.

    Each transaction costs one tag byte, a varint length prefix and its bytes.
    """
    return sum(1 + _uvarint_size(len(tx)) + len(tx) for tx in txs)