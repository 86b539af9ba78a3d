"""A raw transaction together with the metadata the mempool keeps for it."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from txpool.tx import tx_key

_MAX_PEER_ID = 0xFFFF


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class WrappedTx:
    """A transaction with its key, arrival data and application-assigned fields.

    ``height`` is the block height when the transaction was first checked and
    ``timestamp`` when it arrived; both are used for expiry. ``gas_wanted``,
    ``priority`` and ``sender`` come from the application. ``peers`` holds the
    IDs of the peers that sent the transaction.
    """

    tx: bytes
    height: int = 0
    timestamp: datetime = field(default_factory=_utc_now)
    hash: bytes = b""
    gas_wanted: int = 0
    priority: int = 0
    sender: str = ""
    peers: set[int] = field(default_factory=set)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.tx = bytes(self.tx)
        if not self.hash:
            self.hash = tx_key(self.tx)

    @property
    def size(self) -> int:
        """Size of the raw transaction in bytes."""
        return len(self.tx)

    def set_peer(self, peer_id: int) -> None:
        """Record ``peer_id`` as a sender of this transaction."""
        if not 0 <= peer_id <= _MAX_PEER_ID:
            raise ValueError(f"peer id {peer_id} does not fit in 16 bits")
        with self._lock:
            self.peers.add(peer_id)

    def has_peer(self, peer_id: int) -> bool:
        """Report whether ``peer_id`` has sent this transaction."""
        with self._lock:
            return peer_id in self.peers